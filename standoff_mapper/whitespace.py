"""Whitespace handling modes and their resolution along the element tree."""

import re
from enum import Enum

NS_XML = "http://www.w3.org/XML/1998/namespace"
XML_SPACE = "{%s}space" % NS_XML

WHITESPACE_RUN = re.compile(r'\s+')


class WhitespaceMode(Enum):
    PRESERVE = "Preserve"
    COLLAPSE = "Collapse"
    INHERIT = "Inherit"

    @classmethod
    def parse(cls, value):
        """Parse a configuration value (case insensitive), raises ValueError."""
        if isinstance(value, cls):
            return value
        for mode in cls:
            if mode.value.lower() == str(value).lower():
                return mode
        raise ValueError(f"invalid whitespace mode {value!r}, expected one of Preserve, Collapse, Inherit")


def resolve(ancestor_mode, rule_mode, element=None):
    """
    Resolve the effective whitespace mode of an element.

    Args:
        ancestor_mode: effective mode of the nearest ancestor (the global setting at the root)
        rule_mode: mode set by the matching rule, None when there is no rule
        element: the lxml element, an explicit xml:space attribute on it takes precedence

    Returns:
        WhitespaceMode.PRESERVE or WhitespaceMode.COLLAPSE
    """
    if element is not None:
        xml_space = element.get(XML_SPACE)
        if xml_space == "preserve":
            return WhitespaceMode.PRESERVE
        if xml_space in ("collapse", "replace"):
            return WhitespaceMode.COLLAPSE
    if rule_mode is None or rule_mode == WhitespaceMode.INHERIT:
        return ancestor_mode
    return rule_mode


def collapse(text):
    """Replace every run of whitespace by a single space."""
    return WHITESPACE_RUN.sub(" ", text)
