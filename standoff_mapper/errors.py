"""
Error taxonomy for the XML to stand-off conversion.

Configuration problems are detected while the mapping configuration is loaded, before
any document is touched. Everything else is raised during projection and carries the
path of the node that was being processed, so the message can point at the culprit.
"""


class ConversionError(Exception):
    """Base class of all errors raised by the conversion."""

    def __init__(self, message, node_path=None, expression=None):
        super().__init__(message)
        self.message = message
        self.node_path = node_path
        self.expression = expression

    def with_node(self, node_path, expression=None):
        """Attach node (and template) information if not already known, returns self."""
        if self.node_path is None:
            self.node_path = node_path
        if self.expression is None and expression is not None:
            self.expression = expression
        return self

    def __str__(self):
        s = self.message
        if self.expression is not None:
            s += f" (in template {self.expression!r})"
        if self.node_path is not None:
            s += f" at node {self.node_path}"
        return s


class ConfigError(ConversionError):
    """The mapping configuration is structurally invalid."""


class ParseError(ConversionError):
    """The source document can not be parsed."""


class MissingVariable(ConversionError):
    """A template variable has no value for the current node."""

    def __init__(self, variable, node_path=None, expression=None):
        super().__init__(f"Missing variable {variable}", node_path, expression)
        self.variable = variable


class TemplateError(ConversionError):
    """A template could not be rendered, usually a filter receiving the wrong kind of value."""
