"""
Path patterns used to select the rule that applies to an XML element.

The pattern language is a small subset of XPath, comparable to XSLT match patterns:

    /a/b            absolute, a must be the document root element
    //a or a        a anywhere in the document
    a/b, a//b       b as child, resp. descendant, of a
    *, tei:*        any element, any element in a namespace
    a[@x="v"]       predicates: @x="v", @x!="v", @x, text()="v", text()!="v", joined with "and"

Unprefixed names only match elements without a namespace, prefixes are resolved
through the namespace table of the configuration.
"""

import logging
import re

from .errors import ConfigError
from .whitespace import NS_XML

_NAME = r'[A-Za-z_][\w\-\.]*'
STEP_RE = re.compile(rf'^(?:(?P<prefix>{_NAME}):)?(?P<name>\*|{_NAME})$')
CONDITION_RE = re.compile(
    rf'^\s*(?P<lhs>@(?:{_NAME}:)?{_NAME}|text\(\))\s*'
    r'''(?:(?P<op>!=|=)\s*(?P<value>"[^"]*"|'[^']*'|[^\s"']+))?\s*$'''
)
PREDICATE_RE = re.compile(r'''\[((?:[^\]"']|"[^"]*"|'[^']*')*)\]''')
AND_RE = re.compile(r'''\s+and\s+(?=(?:[^"']|"[^"]*"|'[^']*')*$)''')


def split_qname(tag):
    """Split an lxml tag in clark notation into (namespace, localname)."""
    if tag[0] == "{":
        namespace, localname = tag[1:].split("}", 1)
        return namespace, localname
    return None, tag


def resolve_prefix(prefix, namespaces, expression):
    """Return the namespace URI for a prefix, the xml prefix is always known."""
    if prefix in namespaces:
        return namespaces[prefix]
    if prefix == "xml":
        return NS_XML
    raise ConfigError(f"XML namespace prefix not known in configuration: {prefix}", expression=expression)


def qualified_attribute(name, namespaces, expression):
    """Turn a (possibly prefixed) attribute name into lxml's clark notation."""
    if ":" in name:
        prefix, localname = name.split(":", 1)
        return "{%s}%s" % (resolve_prefix(prefix, namespaces, expression), localname)
    return name


def direct_text(element):
    """The element's own text, None if it has element children (mixed content)."""
    for child in element:
        if isinstance(child.tag, str):
            return None
    return (element.text or "").strip()


def node_path(element, prefixes=None):
    """Human readable path of an element, using namespace prefixes where known."""
    prefixes = prefixes or {}
    components = []
    current = element
    while current is not None:
        namespace, localname = split_qname(current.tag)
        if namespace is None:
            components.append(localname)
        elif namespace in prefixes:
            components.append(f"{prefixes[namespace]}:{localname}")
        else:
            components.append("{%s}%s" % (namespace, localname))
        current = current.getparent()
    return "/" + "/".join(reversed(components))


class Condition:
    """A single predicate test against an element."""
    __slots__ = ["attribute", "negate", "value"]

    def __init__(self, attribute, negate, value):
        # attribute None means text()
        self.attribute = attribute
        self.negate = negate
        self.value = value

    def test(self, element):
        if self.attribute is None:
            actual = direct_text(element)
        else:
            actual = element.get(self.attribute)
        if self.value is None:
            return bool(actual)
        if actual is None:
            return self.negate
        return (actual == self.value) != self.negate


class PathStep:
    __slots__ = ["axis", "namespace", "localname", "any_namespace", "conditions"]

    def __init__(self, axis, namespace, localname, any_namespace, conditions):
        # axis describes the relation to the previous step: root, anywhere, child or descendant
        self.axis = axis
        self.namespace = namespace
        self.localname = localname
        self.any_namespace = any_namespace
        self.conditions = conditions

    def test(self, element):
        namespace, localname = split_qname(element.tag)
        if self.localname != "*" and localname != self.localname:
            return False
        if not self.any_namespace and namespace != self.namespace:
            return False
        for condition in self.conditions:
            if not condition.test(element):
                return False
        return True


class PathPattern:
    """A compiled path pattern, see the module documentation for the syntax."""

    def __init__(self, expression, namespaces):
        self.expression = expression
        self.steps = self._parse(expression, namespaces)

    def __repr__(self):
        return f"PathPattern({self.expression!r})"

    @property
    def index_key(self):
        """Local name the last step requires, None for wildcards."""
        localname = self.steps[-1].localname
        return None if localname == "*" else localname

    def _parse(self, expression, namespaces):
        s = expression.strip()
        if not s:
            raise ConfigError("Empty path expression")
        if s.startswith("//"):
            axis, s = "anywhere", s[2:]
        elif s.startswith("/"):
            axis, s = "root", s[1:]
        else:
            axis = "anywhere"
        steps = []
        for raw_step, next_axis in self._split_steps(s, expression):
            steps.append(self._parse_step(raw_step, axis, namespaces, expression))
            axis = next_axis
        return steps

    @staticmethod
    def _split_steps(s, expression):
        """Yields (step, axis of the following step), slashes inside predicates are ignored."""
        depth = 0
        quote = None
        begin = 0
        i = 0
        while i < len(s):
            c = s[i]
            if quote:
                if c == quote:
                    quote = None
            elif c in "\"'":
                quote = c
            elif c == "[":
                depth += 1
            elif c == "]":
                depth -= 1
                if depth < 0:
                    raise ConfigError("Unbalanced ']' in path expression", expression=expression)
            elif c == "/" and depth == 0:
                if s.startswith("//", i):
                    yield s[begin:i], "descendant"
                    i += 2
                else:
                    yield s[begin:i], "child"
                    i += 1
                begin = i
                continue
            i += 1
        if depth != 0 or quote:
            raise ConfigError("Unbalanced predicate or quote in path expression", expression=expression)
        yield s[begin:], None

    def _parse_step(self, raw_step, axis, namespaces, expression):
        conditions = []
        name = raw_step
        if "[" in raw_step:
            name = raw_step[:raw_step.index("[")]
            rest = raw_step[len(name):]
            predicates = PREDICATE_RE.findall(rest)
            if "".join(f"[{predicate}]" for predicate in predicates) != rest:
                raise ConfigError(f"Malformed predicate in path step {raw_step!r}", expression=expression)
            for predicate in predicates:
                conditions.extend(self._parse_predicate(predicate, namespaces, expression))
        m = STEP_RE.match(name.strip())
        if not m:
            raise ConfigError(f"Malformed path step {raw_step!r}", expression=expression)
        prefix = m.group("prefix")
        localname = m.group("name")
        if prefix is not None:
            return PathStep(axis, resolve_prefix(prefix, namespaces, expression), localname, False, conditions)
        # a bare * matches elements in any namespace, a bare name only un-namespaced elements
        return PathStep(axis, None, localname, localname == "*", conditions)

    @staticmethod
    def _parse_predicate(predicate, namespaces, expression):
        conditions = []
        for part in AND_RE.split(predicate.strip()):
            m = CONDITION_RE.match(part)
            if not m:
                raise ConfigError(f"Unsupported predicate [{predicate}]", expression=expression)
            lhs = m.group("lhs")
            attribute = None
            if lhs.startswith("@"):
                attribute = qualified_attribute(lhs[1:], namespaces, expression)
            value = m.group("value")
            if value is not None and value[0] in "\"'":
                value = value[1:-1]
            conditions.append(Condition(attribute, m.group("op") == "!=", value))
        return conditions

    def test(self, element):
        """Test whether the element (an lxml element inside its tree) matches this pattern."""
        chain = [element]
        chain.extend(element.iterancestors())
        chain.reverse()
        return self._match(chain, len(self.steps) - 1, len(chain) - 1)

    def _match(self, chain, k, j):
        step = self.steps[k]
        if not step.test(chain[j]):
            return False
        if k == 0:
            return step.axis != "root" or j == 0
        if step.axis == "child":
            return j > 0 and self._match(chain, k - 1, j - 1)
        for jj in range(j - 1, -1, -1):
            if self._match(chain, k - 1, jj):
                return True
        return False


class PathMatcher:
    """
    Selects the rule for an element: the last declared rule whose path matches.

    Rules are indexed by the local name their path requires, wildcard rules are
    candidates for every element. Candidates are tried from the last declared to the
    first so the outcome is the same as a full scan keeping the last match.
    """

    def __init__(self, rules):
        self.rules = list(rules)
        self._by_name = {}
        self._wildcards = []
        for index, rule in enumerate(self.rules):
            key = rule.pattern.index_key
            if key is None:
                self._wildcards.append(index)
            else:
                self._by_name.setdefault(key, []).append(index)
        self._candidates = {}

    def candidates(self, localname):
        if localname not in self._candidates:
            indices = self._by_name.get(localname, []) + self._wildcards
            self._candidates[localname] = sorted(indices, reverse=True)
        return self._candidates[localname]

    def match(self, element):
        """Returns the matching rule or None."""
        localname = split_qname(element.tag)[1]
        for index in self.candidates(localname):
            rule = self.rules[index]
            if rule.pattern.test(element):
                return rule
        logging.getLogger(__name__).debug("no rule matches %s", localname)
        return None
