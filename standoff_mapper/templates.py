"""
Template variables and filters.

Templates use Jinja2 syntax (`{{ expr }}`, `{% if %}`, `{% for %}`) extended with
variables that look into the XML document around the current node:

    @name, @prefix:name     attribute of the current node
    $name, $prefix:name     immediate text of the first child element with that name
    $name@attr, $name/@attr attribute of that child, $a/b walks several levels
    $.                      full recursive text of the current node
    $..                     full recursive text of the parent, $../@attr its attribute
    ?.<variable>            optional access, a missing value becomes an empty string

These variables are not valid Jinja2 names, so templates are rewritten before
compilation: `@xml:id` becomes `ATTRIB_xml__id`, `$tei:graphic/@url` becomes
`ELEMENT_tei__graphic_IN_ATTRIB_url` and so on. Only variables that resolve to a value
are put in the rendering context, a missing one is left undefined and Jinja2's
StrictUndefined turns any use of it into a MissingVariable error.
"""

import logging
import os
import posixpath
import re

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from .errors import ConfigError, ConversionError, MissingVariable, TemplateError
from .paths import qualified_attribute, resolve_prefix, split_qname

_QNAME = r'[A-Za-z_][\w\-\.]*(?::[A-Za-z_][\w\-\.]*)?'
_STEP = rf'(?:\.\.|\.|@{_QNAME}|{_QNAME}(?:@{_QNAME})?)'
VARIABLE_RE = re.compile(
    rf'(?P<optional>\?\.)?(?P<variable>@{_QNAME}|\$(?:\.\.|\.|{_QNAME}(?:@{_QNAME})?)(?:/{_STEP})*)'
    r'|\?\.(?P<identifier>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)'
)
BLOCK_RE = re.compile(r'(\{\{.*?\}\}|\{%.*?%\})', re.DOTALL)
STRING_LITERAL_RE = re.compile(r'''("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')''')
SINGLE_EXPRESSION_RE = re.compile(r'^\{\{(?P<expression>(?:(?!\}\}|\{\{).)*)\}\}$', re.DOTALL)
UNDEFINED_RE = re.compile(r"^'([^']+)' is undefined")


class Missing:
    """Outcome of a variable lookup that found nothing (as opposed to an empty string)."""

    def __repr__(self):
        return "MISSING"


MISSING = Missing()


def recursive_text(element):
    """All descendant text of an element, in document order."""
    chunks = []
    if element.text:
        chunks.append(element.text)
    for child in element:
        if isinstance(child.tag, str):
            chunks.append(recursive_text(child))
        if child.tail:
            chunks.append(child.tail)
    return "".join(chunks)


def immediate_text(element):
    """Only the text nodes directly under the element."""
    chunks = [element.text or ""]
    for child in element:
        if child.tail:
            chunks.append(child.tail)
    return "".join(chunks)


def first_child(element, namespace, localname):
    for child in element:
        if isinstance(child.tag, str) and split_qname(child.tag) == (namespace, localname):
            return child
    return None


def _mangle(name):
    return name.replace(":", "__").replace("-", "_H_").replace(".", "_D_")


def variable_identifier(variable):
    """The Jinja2 safe identifier a document variable is rewritten to."""
    if variable.startswith("@"):
        return "ATTRIB_" + _mangle(variable[1:])
    parts = []
    for component in variable[1:].split("/"):
        if component == "..":
            parts.append("PARENT")
        elif component == ".":
            parts.append("THIS")
        else:
            name, sep, attribute = component.partition("@")
            if name:
                parts.append(_mangle(name))
            if sep:
                parts.append("ATTRIB_" + _mangle(attribute))
    return "ELEMENT_" + "_IN_".join(parts)


def compile_variable(variable, namespaces, template=None):
    """
    Compile a document variable into lookup steps.

    Steps are ("attribute", clark_name), ("child", namespace, localname), ("parent",)
    or ("self",). An attribute step can only come last.
    """
    if variable.startswith("@"):
        return [("attribute", qualified_attribute(variable[1:], namespaces, template))]
    steps = []
    for component in variable[1:].split("/"):
        if component == "..":
            steps.append(("parent",))
        elif component == ".":
            steps.append(("self",))
        else:
            name, sep, attribute = component.partition("@")
            if name:
                if ":" in name:
                    prefix, localname = name.split(":", 1)
                    steps.append(("child", resolve_prefix(prefix, namespaces, template), localname))
                else:
                    steps.append(("child", None, name))
            if sep:
                steps.append(("attribute", qualified_attribute(attribute, namespaces, template)))
    for step in steps[:-1]:
        if step[0] == "attribute":
            raise ConfigError(f"Attribute must be the last step in variable {variable}", expression=template)
    return steps


def resolve_variable(steps, element):
    """Look up a compiled document variable for an element, returns the value or MISSING."""
    if element is None:
        return MISSING
    node = element
    last = "self"
    for step in steps:
        kind = step[0]
        if kind == "attribute":
            value = node.get(step[1])
            return MISSING if value is None else value
        if kind == "parent":
            node = node.getparent()
        elif kind == "child":
            node = first_child(node, step[1], step[2])
        if node is None:
            return MISSING
        last = kind
    if last == "child":
        return immediate_text(node)
    return recursive_text(node)


def precompile(template, namespaces):
    """
    Rewrite document variables in a template into Jinja2 identifiers.

    Returns:
        tuple: (jinja2 source, {identifier: (variable, steps)})
    """
    variables = {}

    def replace_variable(m):
        if m.group("identifier"):
            identifier = m.group("identifier")
            return f'({identifier} if {identifier} is defined else "")'
        variable = m.group("variable")
        identifier = variable_identifier(variable)
        if identifier not in variables:
            variables[identifier] = (variable, compile_variable(variable, namespaces, template))
        if m.group("optional"):
            return f'({identifier} if {identifier} is defined else "")'
        return identifier

    def replace_block(m):
        block = m.group(0)
        parts = STRING_LITERAL_RE.split(block[2:-2])
        # odd parts are string literals and stay untouched
        for i in range(0, len(parts), 2):
            parts[i] = VARIABLE_RE.sub(replace_variable, parts[i])
        return block[:2] + "".join(parts) + block[-2:]

    return BLOCK_RE.sub(replace_block, template), variables


# Filters. They are strict: a value of the wrong kind raises TemplateError.

def _expect_str(name, value):
    if not isinstance(value, str):
        raise TemplateError(f"filter '{name}' expects a string, got {type(value).__name__} {value!r}")
    return value


def _expect_int(name, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise TemplateError(f"filter '{name}' expects an integer, got {type(value).__name__} {value!r}")
    return value


def _expect_sequence(name, value):
    if not isinstance(value, (str, list, tuple)):
        raise TemplateError(f"filter '{name}' expects a string or list, got {type(value).__name__} {value!r}")
    return value


def _expect_comparable(name, a, b):
    if isinstance(a, str) and isinstance(b, str):
        return
    if isinstance(a, int) and isinstance(b, int) and not isinstance(a, bool) and not isinstance(b, bool):
        return
    raise TemplateError(f"filter '{name}' can not compare {type(a).__name__} with {type(b).__name__}")


def filter_capitalize(value):
    value = _expect_str("capitalize", value)
    return value[:1].upper() + value[1:]


def filter_first(value):
    value = _expect_sequence("first", value)
    return value[0] if value else ""


def filter_last(value):
    value = _expect_sequence("last", value)
    return value[-1] if value else ""


def filter_int(value):
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and re.match(r'^\s*[+-]?\d+\s*$', value):
        return int(value)
    raise TemplateError(f"filter 'int' can not convert {value!r} to an integer")


def filter_as_range(value):
    """1..=n"""
    return list(range(1, _expect_int("as_range", value) + 1))


def filter_divide(a, b):
    _expect_int("divide", a)
    if _expect_int("divide", b) == 0:
        raise TemplateError("filter 'divide': division by zero")
    return a // b


def filter_compare(name, op):
    def compare(a, b):
        _expect_comparable(name, a, b)
        return op(a, b)
    compare.__name__ = f"filter_{name}"
    return compare


FILTERS = {
    "lower": lambda s: _expect_str("lower", s).lower(),
    "upper": lambda s: _expect_str("upper", s).upper(),
    "capitalize": filter_capitalize,
    "trim": lambda s: _expect_str("trim", s).strip(),
    "first": filter_first,
    "last": filter_last,
    "tokenize": lambda s: _expect_str("tokenize", s).split(),
    "squash": lambda s: " ".join(_expect_str("squash", s).split()),
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": filter_compare("gt", lambda a, b: a > b),
    "gte": filter_compare("gte", lambda a, b: a >= b),
    "lt": filter_compare("lt", lambda a, b: a < b),
    "lte": filter_compare("lte", lambda a, b: a <= b),
    "int": filter_int,
    "as_range": filter_as_range,
    "plus": lambda a, b: _expect_int("plus", a) + _expect_int("plus", b),
    "minus": lambda a, b: _expect_int("minus", a) - _expect_int("minus", b),
    "multiply": lambda a, b: _expect_int("multiply", a) * _expect_int("multiply", b),
    "divide": filter_divide,
    "replace": lambda s, old, new: _expect_str("replace", s).replace(_expect_str("replace", old), _expect_str("replace", new)),
    "basename": lambda s: posixpath.basename(_expect_str("basename", s)),
    "noext": lambda s: os.path.splitext(_expect_str("noext", s))[0],
    "starts_with": lambda s, prefix: _expect_str("starts_with", s).startswith(_expect_str("starts_with", prefix)),
    "ends_with": lambda s, suffix: _expect_str("ends_with", s).endswith(_expect_str("ends_with", suffix)),
}


class NodeContext:
    """
    Everything templates may know about the node being processed.

    element is None for resource level (metadata) templates. begin/end are set once the
    text span of the node is known.
    """

    def __init__(self, element=None, resource=None, inputfile=None, doc_num=None, prefixes=None,
                 begin=None, end=None):
        self.element = element
        self.resource = resource
        self.inputfile = inputfile
        self.doc_num = doc_num
        self.prefixes = prefixes or {}
        self.begin = begin
        self.end = end

    def with_span(self, begin, end):
        return NodeContext(self.element, self.resource, self.inputfile, self.doc_num, self.prefixes, begin, end)

    def scalars(self):
        """Context supplied scalar variables, unknown ones are left out."""
        values = {
            "resource": self.resource,
            "inputfile": self.inputfile,
            "doc_num": self.doc_num,
            "begin": self.begin,
            "end": self.end,
        }
        if self.begin is not None and self.end is not None:
            values["length"] = self.end - self.begin
        element = self.element
        if element is not None:
            namespace, localname = split_qname(element.tag)
            values["localname"] = localname
            values["namespace"] = namespace
            if namespace is not None and namespace in self.prefixes:
                values["name"] = f"{self.prefixes[namespace]}:{localname}"
            else:
                values["name"] = localname
            values["position"] = 1 + sum(1 for sibling in element.itersiblings(preceding=True)
                                         if isinstance(sibling.tag, str))
            values["depth"] = sum(1 for _ in element.iterancestors())
        return {k: v for k, v in values.items() if v is not None}


class CompiledTemplate:
    __slots__ = ["source", "template", "expression", "variables"]

    def __init__(self, source, template=None, expression=None, variables=None):
        self.source = source
        self.template = template
        self.expression = expression
        self.variables = variables or {}

    @property
    def literal(self):
        return self.template is None


class TemplateEngine:
    """Compiles templates once and renders them against a NodeContext."""

    def __init__(self, namespaces=None, global_context=None):
        self.namespaces = dict(namespaces or {})
        self.global_context = dict(global_context or {})
        self.environment = SandboxedEnvironment(
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.environment.filters.update(FILTERS)
        self._compiled = {}

    def compile(self, template):
        """Compile (and cache) a template, syntax errors raise ConfigError."""
        compiled = self._compiled.get(template)
        if compiled is not None:
            return compiled
        if "{" not in template:
            compiled = CompiledTemplate(template)
        else:
            source, variables = precompile(template, self.namespaces)
            try:
                jinja_template = self.environment.from_string(source)
                expression = None
                m = SINGLE_EXPRESSION_RE.match(source)
                if m and not m.group("expression").startswith(("-", "+")) and not m.group("expression").endswith(("-", "+")):
                    expression = self.environment.compile_expression(m.group("expression"), undefined_to_none=False)
            except jinja2.TemplateSyntaxError as e:
                raise ConfigError(f"Template syntax error: {e}", expression=template) from e
            compiled = CompiledTemplate(template, jinja_template, expression, variables)
            logging.getLogger(__name__).debug("compiled template %r -> %r", template, source)
        self._compiled[template] = compiled
        return compiled

    def context_for(self, compiled, context):
        values = dict(self.global_context)
        values.update(context.scalars())
        for identifier, (_variable, steps) in compiled.variables.items():
            value = resolve_variable(steps, context.element)
            if value is not MISSING:
                values[identifier] = value
        return values

    def render(self, template, context):
        """Render a template to a string."""
        compiled = self.compile(template)
        if compiled.literal:
            return compiled.source
        return self._run(compiled, lambda values: compiled.template.render(values), context)

    def evaluate(self, template, context):
        """
        Like render(), but a template consisting of a single {{ expression }} returns the
        value of the expression itself (which may be a list or an integer).
        """
        compiled = self.compile(template)
        if compiled.expression is None:
            return self.render(template, context)
        value = self._run(compiled, lambda values: compiled.expression(**values), context)
        if isinstance(value, jinja2.Undefined):
            raise MissingVariable(self._variable_name(compiled, value._undefined_name), expression=template)
        return value

    def _run(self, compiled, fn, context):
        values = self.context_for(compiled, context)
        try:
            return fn(values)
        except ConversionError as e:
            raise e.with_node(None, compiled.source)
        except jinja2.UndefinedError as e:
            m = UNDEFINED_RE.match(str(e))
            variable = self._variable_name(compiled, m.group(1)) if m else str(e)
            raise MissingVariable(variable, expression=compiled.source) from e
        except (jinja2.TemplateError, TypeError, ValueError, ArithmeticError) as e:
            raise TemplateError(f"Failed to render template: {e}", expression=compiled.source) from e

    @staticmethod
    def _variable_name(compiled, identifier):
        if identifier in compiled.variables:
            return compiled.variables[identifier][0]
        return identifier
