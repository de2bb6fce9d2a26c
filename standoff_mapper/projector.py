"""
Projection of XML documents onto a plain text buffer with stand-off annotations.

The projector walks the element tree depth-first in document order, in a single pass:

- each element is matched against the rules of the configuration (last match wins),
- matched rules with text = true contribute the element's own text nodes, optionally
  surrounded by a textprefix and textsuffix which never count as part of the span,
- whitespace is either preserved or collapsed on the fly; in collapse mode a whitespace
  run at the edge of a text node is kept pending and only becomes a single space when
  more text follows,
- annotations are registered in document (pre-)order when the element is entered, their
  ids and data are resolved once the whole resource is projected and all spans are final.

Between-marker annotations (page breaks and the like) span from one occurrence of a
marker element to the next occurrence of an element with the same name.

Main API:
    result = Projector(config).project([root], resource_id="doc")
"""

import logging

from lxml import etree

from .config import AnnotationKind
from .errors import ConversionError, MissingVariable, ParseError, TemplateError
from .paths import node_path
from .store import Annotation, AnnotationData, ResourceSelector, StandoffResult, TextSelector
from .templates import NodeContext
from .whitespace import WhitespaceMode, collapse, resolve

logger = logging.getLogger(__name__)


class SpanFrame:
    """Span of an element whose content is being emitted, end is set when it closes."""
    __slots__ = ["begin", "end"]

    def __init__(self, begin):
        self.begin = begin
        self.end = None


class Marker:
    __slots__ = ["name", "element", "rule", "context", "offset"]

    def __init__(self, name, element, rule, context, offset):
        self.name = name
        self.element = element
        self.rule = rule
        self.context = context
        self.offset = offset


class PendingAnnotation:
    """An annotation registered during traversal, resolved once its span is final."""
    __slots__ = ["rule", "context", "span"]

    def __init__(self, rule, context, span=None):
        self.rule = rule
        self.context = context
        self.span = span


class OutputState:
    """
    Mutable state of one projection run: the text buffer and everything that refers to
    positions in it. Offsets are counted in codepoints.
    """

    def __init__(self):
        self.chunks = []
        self.cursor = 0
        self.last_char = None
        self.pending_whitespace = False
        self.document_start = 0
        self.frames = []
        self.markers = {}
        self.jobs = []
        self.inputfile = None
        self.doc_num = None

    def text(self):
        return "".join(self.chunks)

    def start_document(self, inputfile, doc_num):
        self.inputfile = inputfile
        self.doc_num = doc_num
        self.document_start = self.cursor
        self.pending_whitespace = False

    def _append(self, s):
        if s:
            self.chunks.append(s)
            self.cursor += len(s)
            self.last_char = s[-1]

    def _ends_with_whitespace(self):
        return self.last_char is not None and self.last_char.isspace()

    def _separator(self):
        position = self.cursor
        self._append(" ")
        # spans that have not received any text yet start after the separator
        for frame in self.frames:
            if frame.begin == position:
                frame.begin = self.cursor
        for marker in self.markers.values():
            if marker.offset == position:
                marker.offset = self.cursor

    def emit_text(self, text, mode):
        """Emit a text node of the source document."""
        if not text:
            return
        if mode == WhitespaceMode.PRESERVE:
            if (self.pending_whitespace and not text[0].isspace() and self.cursor > self.document_start
                    and not self._ends_with_whitespace()):
                self._separator()
            self.pending_whitespace = False
            self._append(text)
            return
        if text.isspace():
            self.pending_whitespace = True
            return
        leading = text[0].isspace()
        content = collapse(text.strip())
        if ((self.pending_whitespace or leading) and self.cursor > self.document_start
                and not self._ends_with_whitespace()):
            self._separator()
        self._append(content)
        self.pending_whitespace = text[-1].isspace()

    def emit_prefix(self, text):
        # an empty affix leaves a pending separator alone
        if not text:
            return
        self.pending_whitespace = False
        self._append(text)

    def emit_suffix(self, text):
        if not text:
            return
        self._append(text)
        self.pending_whitespace = False

    def open_frame(self):
        frame = SpanFrame(self.cursor)
        self.frames.append(frame)
        return frame

    def close_frame(self, frame):
        self.frames.remove(frame)
        frame.end = self.cursor
        return frame


class AnnotationEmitter:
    """Turns resolved rules into Annotation records."""

    def __init__(self, config, resource_id, provenance=False, id_prefix=None):
        self.config = config
        self.engine = config.engine
        self.resource_id = resource_id
        self.provenance = provenance
        id_prefix = id_prefix if id_prefix is not None else config.id_prefix
        self.id_prefix = id_prefix.replace("{resource}", resource_id) if id_prefix else None

    def annotation_id(self, template, context):
        """Rendered id with the prefix applied, None if there is no id or it is empty."""
        if template is None:
            return None
        annotation_id = self.engine.render(template, context)
        if not annotation_id:
            return None
        if self.id_prefix:
            return self.id_prefix + annotation_id
        return annotation_id

    def evaluate_value(self, value, context):
        if isinstance(value, str):
            return self.engine.evaluate(value, context)
        if isinstance(value, list):
            return [self.evaluate_value(item, context) for item in value]
        if isinstance(value, dict):
            return {k: self.evaluate_value(v, context) for k, v in value.items()}
        return value

    def data_entry(self, spec, context):
        """Resolve one annotationdata entry, returns None if the entry is skipped."""
        try:
            data_set = self.engine.render(spec.set, context) if spec.set is not None else ""
            key = self.engine.render(spec.key, context)
            value = self.evaluate_value(spec.value, context)
        except MissingVariable as e:
            if spec.skip_if_missing:
                logger.debug("skipping annotation data %s: %s", spec.key, e)
                return None
            raise
        if not key:
            if spec.skip_if_missing:
                return None
            raise TemplateError("annotation data key evaluates to an empty string", expression=spec.key)
        if value is None or (isinstance(value, str) and not value):
            if not spec.allow_empty_value:
                logger.debug("skipping annotation data %s with empty value", key)
                return None
        return AnnotationData(data_set or self.config.default_set, key, value)

    def data(self, specs, context):
        entries = []
        for spec in specs:
            entry = self.data_entry(spec, context)
            if entry is not None:
                entries.append(entry)
        return entries

    def emit(self, job):
        rule = job.rule
        context = job.context
        if job.span is not None:
            context = context.with_span(*job.span)
        if rule.annotation_kind == AnnotationKind.RESOURCE_SELECTOR:
            target = ResourceSelector(self.resource_id)
        else:
            target = TextSelector(self.resource_id, *job.span)
        try:
            annotation = Annotation(target, self.data(rule.annotationdata, context),
                                    id=self.annotation_id(rule.id, context))
        except ConversionError as e:
            raise e.with_node(node_path(context.element, self.config.prefixes))
        if self.provenance and context.element is not None:
            annotation.provenance = {
                "inputfile": context.inputfile,
                "xpath": context.element.getroottree().getpath(context.element),
            }
        return annotation

    def emit_metadata(self, rule, context):
        """Resource annotation of a metadata rule, None if nothing resolved."""
        data = self.data(rule.annotationdata, context)
        annotation_id = self.annotation_id(rule.id, context)
        if not data and annotation_id is None:
            return None
        return Annotation(ResourceSelector(self.resource_id), data, id=annotation_id)


class Projector:
    """
    Projects documents according to a MappingConfig. The projector itself keeps no
    state between runs, all of it lives in the OutputState of a run.
    """

    def __init__(self, config, provenance=False, id_prefix=None):
        self.config = config
        self.provenance = provenance
        self.id_prefix = id_prefix

    def project(self, documents, resource_id, inputfiles=None):
        """
        Project one or more documents into a single resource.

        Args:
            documents: lxml root elements (or element trees), concatenated in this order
            resource_id: identifier of the output text resource
            inputfiles: file names of the documents, for the inputfile variable and provenance

        Returns:
            StandoffResult: text and annotations, not committed to any store yet
        """
        inputfiles = list(inputfiles or [])
        state = OutputState()
        for doc_num, document in enumerate(documents):
            root = document.getroot() if hasattr(document, "getroot") else document
            inputfile = inputfiles[doc_num] if doc_num < len(inputfiles) else None
            state.start_document(inputfile, doc_num)
            logger.debug("projecting document %d (%s) at offset %d", doc_num, inputfile, state.cursor)
            self._visit(root, self.config.whitespace, state, resource_id)
        for name in state.markers:
            logger.debug("discarding open marker %s", name)

        text = state.text()
        emitter = AnnotationEmitter(self.config, resource_id, self.provenance, self.id_prefix)
        annotations = [emitter.emit(job) for job in state.jobs]
        if self.config.metadata:
            context = NodeContext(resource=resource_id, inputfile=inputfiles[0] if inputfiles else None,
                                  prefixes=self.config.prefixes, begin=0, end=len(text))
            for rule in self.config.metadata:
                annotation = emitter.emit_metadata(rule, context)
                if annotation is not None:
                    annotations.append(annotation)
        _debug_log_annotations(text, annotations)
        return StandoffResult(resource_id, text, annotations, inputfiles[0] if inputfiles else None)

    def _context(self, element, state, resource_id):
        return NodeContext(element, resource_id, state.inputfile, state.doc_num, self.config.prefixes)

    def _render(self, template, context):
        try:
            return self.config.engine.render(template, context)
        except ConversionError as e:
            raise e.with_node(node_path(context.element, self.config.prefixes))

    def _visit(self, element, inherited_mode, state, resource_id):
        rule = self.config.rule_for(element)
        mode = resolve(inherited_mode, rule.whitespace if rule is not None else None, element)
        if rule is None:
            self._visit_content(element, mode, state, resource_id, False)
            return
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s matches %s (whitespace %s)", node_path(element, self.config.prefixes),
                         rule.path, mode.value)
        context = self._context(element, state, resource_id)

        if rule.is_marker:
            self._marker_event(element, rule, context, state)
            if not rule.stops:
                self._visit_content(element, mode, state, resource_id, False)
            return

        job = None
        if rule.annotation_kind != AnnotationKind.NONE:
            job = PendingAnnotation(rule, context)
            state.jobs.append(job)
        if rule.stops:
            if job is not None and rule.annotation_kind == AnnotationKind.TEXT_SELECTOR:
                job.span = (state.cursor, state.cursor)
            return

        if rule.textprefix is not None:
            state.emit_prefix(self._render(rule.textprefix, context))
        frame = state.open_frame()
        self._visit_content(element, mode, state, resource_id, rule.emits_text)
        state.close_frame(frame)
        if rule.textsuffix is not None:
            state.emit_suffix(self._render(rule.textsuffix, context.with_span(frame.begin, frame.end)))
        if job is not None:
            job.span = (frame.begin, frame.end)

    def _visit_content(self, element, mode, state, resource_id, emit_text):
        """Own text nodes (if emit_text) and child elements, in document order."""
        if emit_text and element.text:
            state.emit_text(element.text, mode)
        for child in element:
            if isinstance(child, etree._Entity):
                raise ParseError(f"Unresolved entity reference {child.text}",
                                 node_path=node_path(element, self.config.prefixes))
            if isinstance(child.tag, str):
                self._visit(child, mode, state, resource_id)
            if emit_text and child.tail:
                state.emit_text(child.tail, mode)

    def _marker_event(self, element, rule, context, state):
        previous = state.markers.get(element.tag)
        if previous is not None:
            state.jobs.append(PendingAnnotation(previous.rule, previous.context, (previous.offset, state.cursor)))
        state.markers[element.tag] = Marker(element.tag, element, rule, context, state.cursor)


def _format_context_snippet(text, position, marker, radius=10):
    """Return a snippet of text around position with marker inserted."""
    position = max(0, min(len(text), position))
    start = max(0, position - radius)
    end = min(len(text), position + radius)
    snippet = f"{text[start:position]}{marker}{text[position:end]}"
    return snippet.replace("\n", "\\n")


def _annotation_label(annotation):
    if annotation.id:
        return annotation.id
    if annotation.data:
        return str(annotation.data[0].value)
    return "annotation"


def _debug_log_annotations(text, annotations):
    """Emit detailed debug logs of annotation boundaries."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("Projected %d characters, %d annotations", len(text), len(annotations))
    for annotation in annotations:
        target = annotation.target
        label = _annotation_label(annotation)
        if isinstance(target, TextSelector):
            logger.debug("  %s [%d, %d) -> %s", label, target.begin, target.end,
                         _format_context_snippet(text, target.begin, f"[{label}]"))
        else:
            logger.debug("  %s on resource %s", label, target.resource)


def debug_annotations(text, annotations):
    """Create a debug view of text with annotation boundaries marked."""
    boundaries = []
    for annotation in annotations:
        target = annotation.target
        if not isinstance(target, TextSelector):
            continue
        label = _annotation_label(annotation)
        boundaries.append((target.begin, f"[{label}]"))
        boundaries.append((target.end, f"[/{label}]"))

    # insert from the end so earlier positions stay valid
    boundaries.sort(key=lambda boundary: boundary[0])
    result = text
    for position, marker in reversed(boundaries):
        result = result[:position] + marker + result[position:]
    return result
