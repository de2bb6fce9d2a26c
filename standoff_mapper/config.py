"""
Mapping configuration: which XML elements produce text and annotations, and how.

A configuration is loaded from TOML, YAML or JSON. All paths and templates are compiled
when the configuration is built, so structural problems (unknown namespace prefixes,
malformed paths, template syntax errors, unknown or circular bases) surface as
ConfigError before any document is processed.

Example (TOML):

    default_set = "urn:example"

    [namespaces]
    tei = "http://www.tei-c.org/ns/1.0"

    [[elements]]
    path = "//tei:p"
    text = true
    textsuffix = "\n"
    annotation = "TextSelector"

    [[elements.annotationdata]]
    key = "type"
    value = "paragraph"
"""

import json
import logging
import os
import tomllib
from enum import Enum

import yaml

from .errors import ConfigError
from .paths import PathMatcher, PathPattern
from .templates import TemplateEngine
from .whitespace import NS_XML, WhitespaceMode

DEFAULT_SET = "urn:standoff-mapper"

CONFIG_KEYS = {"inject_dtd", "whitespace", "default_set", "namespaces", "id_strip_suffix", "id_prefix",
               "elements", "baseelements", "context", "metadata"}
RULE_KEYS = {"name", "path", "text", "textprefix", "textsuffix", "stop", "whitespace", "annotation", "id",
             "annotationdata", "base"}
DATA_KEYS = {"set", "key", "value", "skip_if_missing", "allow_empty_value"}
METADATA_KEYS = {"id", "annotationdata"}

SCALAR_FIELDS = ("text", "textprefix", "textsuffix", "stop", "whitespace", "annotation", "id")


class AnnotationKind(Enum):
    NONE = "None"
    TEXT_SELECTOR = "TextSelector"
    RESOURCE_SELECTOR = "ResourceSelector"
    TEXT_SELECTOR_BETWEEN_MARKERS = "TextSelectorBetweenMarkers"

    @classmethod
    def parse(cls, value):
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"invalid annotation type {value!r}, expected one of "
                         + ", ".join(kind.value for kind in cls))


def _warn_unknown_keys(data, known, where):
    for key in data:
        if key not in known:
            logging.warning("unknown key %s in %s, ignored", key, where)


def _optional_bool(data, key, where):
    value = data.get(key)
    if value is not None and not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean in {where}, got {value!r}")
    return value


def _optional_str(data, key, where):
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigError(f"{key} must be a string in {where}, got {value!r}")
    return value


def _iter_string_leaves(value):
    if isinstance(value, str):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from _iter_string_leaves(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_string_leaves(item)


class AnnotationDataSpec:
    """One (set, key, value) entry attached to an annotation, every string is a template."""

    def __init__(self, key, value, set=None, skip_if_missing=False, allow_empty_value=False):
        self.key = key
        self.value = value
        self.set = set
        self.skip_if_missing = skip_if_missing
        self.allow_empty_value = allow_empty_value

    def __repr__(self):
        return f"AnnotationDataSpec(set={self.set!r}, key={self.key!r}, value={self.value!r})"

    @classmethod
    def from_dict(cls, data, where):
        if not isinstance(data, dict):
            raise ConfigError(f"annotationdata entries must be tables in {where}")
        _warn_unknown_keys(data, DATA_KEYS, f"annotationdata of {where}")
        key = _optional_str(data, "key", where)
        if key is None:
            raise ConfigError(f"annotationdata entry without key in {where}")
        if "value" not in data:
            raise ConfigError(f"annotationdata entry {key} without value in {where}")
        return cls(
            key,
            data["value"],
            set=_optional_str(data, "set", where),
            skip_if_missing=bool(_optional_bool(data, "skip_if_missing", where)),
            allow_empty_value=bool(_optional_bool(data, "allow_empty_value", where)),
        )

    def templates(self):
        if self.set is not None:
            yield self.set
        yield self.key
        yield from _iter_string_leaves(self.value)


def _parse_annotationdata(data, where):
    entries = data.get("annotationdata") or []
    if not isinstance(entries, list):
        raise ConfigError(f"annotationdata must be a list in {where}")
    return [AnnotationDataSpec.from_dict(entry, where) for entry in entries]


class BaseElement:
    """
    A named, partial rule. Never matched against documents, only merged into the
    rules (and bases) that list it in their `base`.
    """

    def __init__(self, name=None, text=None, textprefix=None, textsuffix=None, stop=None, whitespace=None,
                 annotation=None, id=None, annotationdata=None, base=None):
        self.name = name
        self.text = text
        self.textprefix = textprefix
        self.textsuffix = textsuffix
        self.stop = stop
        self.whitespace = whitespace
        self.annotation = annotation
        self.id = id
        self.annotationdata = list(annotationdata or [])
        self.base = list(base or [])

    @classmethod
    def _fields_from_dict(cls, data, where):
        if not isinstance(data, dict):
            raise ConfigError(f"expected a table for {where}")
        _warn_unknown_keys(data, RULE_KEYS, where)
        fields = {
            "text": _optional_bool(data, "text", where),
            "textprefix": _optional_str(data, "textprefix", where),
            "textsuffix": _optional_str(data, "textsuffix", where),
            "stop": _optional_bool(data, "stop", where),
            "id": _optional_str(data, "id", where),
            "annotationdata": _parse_annotationdata(data, where),
        }
        try:
            if data.get("whitespace") is not None:
                fields["whitespace"] = WhitespaceMode.parse(data["whitespace"])
            if data.get("annotation") is not None:
                fields["annotation"] = AnnotationKind.parse(data["annotation"])
        except ValueError as e:
            raise ConfigError(f"{e} in {where}") from e
        base = data.get("base") or []
        if isinstance(base, str):
            base = [base]
        if not isinstance(base, list) or not all(isinstance(b, str) for b in base):
            raise ConfigError(f"base must be a list of names in {where}")
        fields["base"] = base
        return fields

    @classmethod
    def from_dict(cls, data, name=None):
        name = name if name is not None else data.get("name")
        if not name:
            raise ConfigError("baseelements entry without a name")
        return cls(name=name, **cls._fields_from_dict(data, f"baseelement {name}"))


class ElementRule(BaseElement):
    """
    A rule matched against document elements by path. Unset flags are None here and
    read through the properties below, which apply the defaults.
    """

    def __init__(self, path, pattern=None, **kwargs):
        super().__init__(**kwargs)
        self.path = path
        self.pattern = pattern

    def __repr__(self):
        return f"ElementRule({self.path!r})"

    @classmethod
    def from_dict(cls, data, namespaces=None):
        path = data.get("path") if isinstance(data, dict) else None
        if not isinstance(path, str):
            raise ConfigError("element rule without path")
        where = f"element {path}"
        fields = cls._fields_from_dict(data, where)
        pattern = PathPattern(path, namespaces or {})
        return cls(path, pattern, name=data.get("name"), **fields)

    @property
    def emits_text(self):
        return bool(self.text)

    @property
    def stops(self):
        return bool(self.stop)

    @property
    def annotation_kind(self):
        return self.annotation or AnnotationKind.NONE

    @property
    def is_marker(self):
        return self.annotation == AnnotationKind.TEXT_SELECTOR_BETWEEN_MARKERS

    def templates(self):
        for field in ("textprefix", "textsuffix", "id"):
            value = getattr(self, field)
            if value is not None:
                yield value
        for spec in self.annotationdata:
            yield from spec.templates()


def _flatten_base(name, baseelements, chain):
    """Scalar fields and annotationdata of a base with its own bases merged in."""
    if name in chain:
        raise ConfigError("circular base reference: " + " -> ".join(chain + (name,)))
    base = baseelements.get(name)
    if base is None:
        raise ConfigError(f"unknown base element {name}")
    scalars = {field: getattr(base, field) for field in SCALAR_FIELDS}
    annotationdata = []
    for parent in base.base:
        parent_scalars, parent_data = _flatten_base(parent, baseelements, chain + (name,))
        for field in SCALAR_FIELDS:
            if scalars[field] is None:
                scalars[field] = parent_scalars[field]
        annotationdata.extend(parent_data)
    annotationdata.extend(base.annotationdata)
    return scalars, annotationdata


def resolve_bases(rule, baseelements):
    """
    Merge the bases of a rule into a new rule.

    The rule's own scalar settings win, otherwise the first listed base that sets the
    field (a base's own value wins over the bases it lists itself). annotationdata is
    the concatenation of the bases' lists, in the order the bases are listed, followed
    by the rule's own entries.
    """
    if not rule.base:
        return rule
    scalars = {field: getattr(rule, field) for field in SCALAR_FIELDS}
    annotationdata = []
    for name in rule.base:
        base_scalars, base_data = _flatten_base(name, baseelements, ())
        for field in SCALAR_FIELDS:
            if scalars[field] is None:
                scalars[field] = base_scalars[field]
        annotationdata.extend(base_data)
    annotationdata.extend(rule.annotationdata)
    return ElementRule(rule.path, rule.pattern, name=rule.name, annotationdata=annotationdata,
                       base=rule.base, **scalars)


class MetadataRule:
    """Annotation on a whole output resource, evaluated without a node."""

    def __init__(self, id=None, annotationdata=None):
        self.id = id
        self.annotationdata = list(annotationdata or [])

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ConfigError("metadata entries must be tables")
        _warn_unknown_keys(data, METADATA_KEYS, "metadata")
        return cls(_optional_str(data, "id", "metadata"), _parse_annotationdata(data, "metadata"))

    def templates(self):
        if self.id is not None:
            yield self.id
        for spec in self.annotationdata:
            yield from spec.templates()


class MappingConfig:
    """
    A complete, compiled mapping configuration. Treat it as read only once built, it is
    shared by every projection.
    """

    def __init__(self, elements=(), baseelements=None, whitespace=WhitespaceMode.COLLAPSE,
                 default_set=DEFAULT_SET, namespaces=None, context=None, metadata=(),
                 id_strip_suffix=(), inject_dtd=None, id_prefix=None):
        self.namespaces = dict(namespaces or {})
        self.baseelements = dict(baseelements or {})
        self.elements = tuple(resolve_bases(rule, self.baseelements) for rule in elements)
        if whitespace == WhitespaceMode.INHERIT:
            raise ConfigError("the global whitespace mode must be Preserve or Collapse")
        self.whitespace = whitespace
        self.default_set = default_set
        self.context = dict(context or {})
        self.metadata = tuple(metadata)
        self.id_strip_suffix = tuple(id_strip_suffix)
        self.inject_dtd = inject_dtd
        self.id_prefix = id_prefix
        self.prefixes = {uri: prefix for prefix, uri in self.namespaces.items()}
        self.prefixes.setdefault(NS_XML, "xml")
        for rule in self.elements:
            if rule.annotation == AnnotationKind.TEXT_SELECTOR and not rule.emits_text:
                raise ConfigError(f"element {rule.path}: TextSelector annotations require text = true")
        self.engine = TemplateEngine(self.namespaces, {
            "context": self.context,
            "namespaces": self.namespaces,
            "default_set": self.default_set,
        })
        self._compile_templates()
        self.matcher = PathMatcher(self.elements)

    def _compile_templates(self):
        for rule in self.elements:
            for template in rule.templates():
                try:
                    self.engine.compile(template)
                except ConfigError as e:
                    e.message += f" in element {rule.path}"
                    raise
        for rule in self.metadata:
            for template in rule.templates():
                self.engine.compile(template)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a table")
        _warn_unknown_keys(data, CONFIG_KEYS, "configuration")
        namespaces = data.get("namespaces") or {}
        if not isinstance(namespaces, dict):
            raise ConfigError("namespaces must be a table of prefix = URI")
        baseelements = {}
        raw_bases = data.get("baseelements") or {}
        if isinstance(raw_bases, dict):
            for name, base in raw_bases.items():
                baseelements[name] = BaseElement.from_dict(base, name)
        elif isinstance(raw_bases, list):
            for base in raw_bases:
                base = BaseElement.from_dict(base)
                baseelements[base.name] = base
        else:
            raise ConfigError("baseelements must be a table or a list")
        elements = [ElementRule.from_dict(rule, namespaces) for rule in data.get("elements") or []]
        metadata = [MetadataRule.from_dict(rule) for rule in data.get("metadata") or []]
        try:
            whitespace = WhitespaceMode.parse(data.get("whitespace", "Collapse"))
        except ValueError as e:
            raise ConfigError(str(e)) from e
        id_strip_suffix = data.get("id_strip_suffix") or []
        if isinstance(id_strip_suffix, str):
            id_strip_suffix = [id_strip_suffix]
        return cls(
            elements=elements,
            baseelements=baseelements,
            whitespace=whitespace,
            default_set=_optional_str(data, "default_set", "configuration") or DEFAULT_SET,
            namespaces=namespaces,
            context=data.get("context"),
            metadata=metadata,
            id_strip_suffix=id_strip_suffix,
            inject_dtd=_optional_str(data, "inject_dtd", "configuration"),
            id_prefix=_optional_str(data, "id_prefix", "configuration"),
        )

    @classmethod
    def from_toml_str(cls, s):
        try:
            return cls.from_dict(tomllib.loads(s))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"invalid TOML: {e}") from e

    def rule_for(self, element):
        return self.matcher.match(element)

    def resource_id(self, filename):
        """Resource identifier for an input file: its basename without the first matching suffix."""
        name = os.path.basename(filename)
        for suffix in self.id_strip_suffix:
            if suffix and name.endswith(suffix):
                return name[:-len(suffix)]
        return name


def load_config(path):
    """Load a mapping configuration from a .toml, .yaml/.yml or .json file."""
    ext = os.path.splitext(path)[1].lower()
    try:
        if ext == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        elif ext in (".yaml", ".yml"):
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        elif ext == ".json":
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        else:
            raise ConfigError(f"unsupported configuration format {ext or path}, use .toml, .yaml or .json")
    except OSError as e:
        raise ConfigError(f"can not read configuration {path}: {e}") from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"can not parse configuration {path}: {e}") from e
    config = MappingConfig.from_dict(data)
    logging.info("loaded configuration %s: %d element rules, %d base elements",
                 path, len(config.elements), len(config.baseelements))
    return config
