"""Typed attribute expressions.

Attribute values in a declaration are literals, nested lists/dicts, or
expressions. String interpolation (``"${azurerm_resource_group.rg.name}"``)
is parsed once, at graph-build time, into typed objects:

- :class:`Reference` - ``TYPE.NAME[KEY].attr.path``
- :class:`SplatReference` - ``TYPE.NAME[*].attr.path`` (list across all keys)
- :class:`VariableRef` - ``var.NAME.path``
- :class:`IterationRef` - ``count.index``, ``each.key``, ``each.value.path``
- :class:`Template` - literal text mixed with any of the above

``$${`` escapes a literal ``${``. A string that is exactly one ``${...}``
evaluates to the referenced value with its original type; anything else
evaluates to a string.

Values that cannot be known before apply evaluate to :data:`UNKNOWN`.
"""

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .exceptions import ValidationError
from .models import IndexKey, ResourceAddress

PathStep = str | int

_IDENT = r"[A-Za-z_][A-Za-z0-9_-]*"
_TOKEN_PATTERN = re.compile(
    rf"""\s*(?:
        (?P<ident>{_IDENT})
      | (?P<dot>\.)
      | \[\s*(?P<bracket>\d+|"(?:[^"\\]|\\.)*"|\*|[^\[\]]+?)\s*\]
    )""",
    re.VERBOSE,
)


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance: "_Unknown | None" = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self) -> str:
        return "UNKNOWN"


UNKNOWN: Any = _Unknown()


def is_unknown(value: Any) -> bool:
    """True if ``value`` is, or contains, :data:`UNKNOWN`."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(is_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(is_unknown(v) for v in value)
    return False


# ---------------------------------------------------------------------------
# Expression types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reference:
    """
    Reference to an attribute of another resource.

    ``key`` may still be an expression (``[count.index]``) until the graph
    builder substitutes iteration values; afterwards it is an index key.
    ``path[0]`` is the attribute name; further steps index into it.
    """

    type: str
    name: str
    key: Any
    path: tuple[PathStep, ...]

    @property
    def attribute(self) -> str:
        return str(self.path[0])

    @property
    def target(self) -> ResourceAddress:
        """The referenced address. Only valid once ``key`` is a literal."""
        return ResourceAddress(self.type, self.name, self.key)

    def __str__(self) -> str:
        key = ""
        if self.key is not None:
            key = f"[{_format_key(self.key)}]"
        return f"${{{self.type}.{self.name}{key}{_format_path(self.path)}}}"


@dataclass(frozen=True)
class SplatReference:
    """Reference to an attribute across every expanded instance of a resource."""

    type: str
    name: str
    path: tuple[PathStep, ...]

    @property
    def attribute(self) -> str:
        return str(self.path[0])

    def __str__(self) -> str:
        return f"${{{self.type}.{self.name}[*]{_format_path(self.path)}}}"


@dataclass(frozen=True)
class VariableRef:
    """Reference to an input variable (``var.NAME``)."""

    name: str
    path: tuple[PathStep, ...] = ()

    def __str__(self) -> str:
        return f"${{var.{self.name}{_format_path(self.path)}}}"


@dataclass(frozen=True)
class IterationRef:
    """``count.index``, ``each.key`` or ``each.value`` inside an expanded declaration."""

    kind: str  # "count.index", "each.key", "each.value"
    path: tuple[PathStep, ...] = ()

    def __str__(self) -> str:
        return f"${{{self.kind}{_format_path(self.path)}}}"


@dataclass(frozen=True)
class Template:
    """String template: literal text interleaved with expressions."""

    parts: tuple[Any, ...]

    def __str__(self) -> str:
        out = []
        for part in self.parts:
            if isinstance(part, str):
                out.append(part.replace("${", "$${"))
            else:
                out.append(str(part))
        return "".join(out)


Expression = Reference | SplatReference | VariableRef | IterationRef | Template
EXPRESSION_TYPES = (Reference, SplatReference, VariableRef, IterationRef, Template)


def _format_key(key: Any) -> str:
    if isinstance(key, str):
        return json.dumps(key)
    if isinstance(key, int):
        return str(key)
    # Unsubstituted inner expression: drop the ${} wrapper
    return str(key)[2:-1]


def _format_path(path: tuple[PathStep, ...]) -> str:
    out = []
    for step in path:
        if isinstance(step, int):
            out.append(f"[{step}]")
        else:
            out.append(f".{step}")
    return "".join(out)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_value(value: Any) -> Any:
    """Parse interpolation strings anywhere inside ``value``."""
    if isinstance(value, str):
        return parse_string(value)
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [parse_value(v) for v in value]
    return value


def parse_string(text: str) -> Any:
    """
    Parse one string.

    Returns the plain string when it has no interpolation, the bare
    expression when the string is exactly ``${...}``, else a Template.

    Raises:
        ValidationError: On unterminated or malformed interpolation
    """
    parts: list[Any] = []
    buf: list[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buf.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = text.find("}", i + 2)
            if end == -1:
                raise ValidationError("expression", text, "unterminated ${")
            if buf:
                parts.append("".join(buf))
                buf = []
            parts.append(parse_expression(text[i + 2 : end]))
            i = end + 1
            continue
        buf.append(text[i])
        i += 1
    if buf:
        parts.append("".join(buf))

    if not any(isinstance(p, EXPRESSION_TYPES) for p in parts):
        return "".join(parts)
    if len(parts) == 1:
        return parts[0]
    return Template(tuple(parts))


def _tokenize(text: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    stripped = text.rstrip()
    while pos < len(stripped):
        match = _TOKEN_PATTERN.match(stripped, pos)
        if match is None or match.end() == pos:
            raise ValidationError("expression", text, f"unexpected input at offset {pos}")
        if match.group("ident") is not None:
            tokens.append(("ident", match.group("ident")))
        elif match.group("dot") is not None:
            tokens.append(("dot", "."))
        else:
            raw = match.group("bracket").strip()
            if raw == "*":
                tokens.append(("splat", None))
            elif raw.isdigit():
                tokens.append(("index", int(raw)))
            elif raw.startswith('"'):
                tokens.append(("index", json.loads(raw)))
            else:
                tokens.append(("index", parse_expression(raw)))
        pos = match.end()
    return tokens


def parse_expression(text: str) -> Expression:
    """
    Parse the inside of a ``${...}``.

    Raises:
        ValidationError: If the expression is malformed
    """
    tokens = _tokenize(text)
    if not tokens or tokens[0][0] != "ident":
        raise ValidationError("expression", text, "expected an identifier")

    # Collapse "a.b[0].c" into steps: names and indexes; splat is kept as a marker
    steps: list[tuple[str, Any]] = [("name", tokens[0][1])]
    i = 1
    while i < len(tokens):
        kind, value = tokens[i]
        if kind == "dot":
            if i + 1 >= len(tokens) or tokens[i + 1][0] != "ident":
                raise ValidationError("expression", text, "expected a name after '.'")
            steps.append(("name", tokens[i + 1][1]))
            i += 2
        elif kind in ("index", "splat"):
            steps.append((kind, value))
            i += 1
        else:
            raise ValidationError("expression", text, "expected '.' or '[' between names")

    head = steps[0][1]
    if head == "var":
        if len(steps) < 2 or steps[1][0] != "name":
            raise ValidationError("expression", text, "expected var.NAME")
        return VariableRef(steps[1][1], _path(steps[2:], text))
    if head == "count":
        if len(steps) != 2 or steps[1] != ("name", "index"):
            raise ValidationError("expression", text, "only count.index is supported")
        return IterationRef("count.index")
    if head == "each":
        if len(steps) < 2 or steps[1] not in (("name", "key"), ("name", "value")):
            raise ValidationError("expression", text, "expected each.key or each.value")
        if steps[1][1] == "key":
            if len(steps) > 2:
                raise ValidationError("expression", text, "each.key has no attributes")
            return IterationRef("each.key")
        return IterationRef("each.value", _path(steps[2:], text))

    if len(steps) < 2 or steps[1][0] != "name":
        raise ValidationError("expression", text, "expected TYPE.NAME")
    type_name, local_name = head, steps[1][1]
    rest = steps[2:]
    key: Any = None
    if rest and rest[0][0] == "splat":
        path = _path(rest[1:], text)
        if not path:
            raise ValidationError("expression", text, "splat reference needs an attribute")
        return SplatReference(type_name, local_name, path)
    if rest and rest[0][0] == "index":
        key = rest[0][1]
        rest = rest[1:]
    path = _path(rest, text)
    if not path or not isinstance(path[0], str):
        raise ValidationError("expression", text, "resource reference needs an attribute")
    return Reference(type_name, local_name, key, path)


def _path(steps: list[tuple[str, Any]], text: str) -> tuple[PathStep, ...]:
    path: list[PathStep] = []
    for kind, value in steps:
        if kind == "splat":
            raise ValidationError("expression", text, "splat is only allowed after TYPE.NAME")
        if kind == "index" and not isinstance(value, (int, str)):
            raise ValidationError("expression", text, "attribute indexes must be literals")
        path.append(value)
    return tuple(path)


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


def iter_expressions(value: Any) -> Iterator[Expression]:
    """Yield every expression inside ``value`` (depth-first, including template parts)."""
    if isinstance(value, Template):
        yield value
        for part in value.parts:
            yield from iter_expressions(part)
    elif isinstance(value, Reference):
        yield value
        if isinstance(value.key, EXPRESSION_TYPES):
            yield from iter_expressions(value.key)
    elif isinstance(value, EXPRESSION_TYPES):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_expressions(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_expressions(v)


def references(value: Any) -> list[Reference | SplatReference]:
    """All resource references inside ``value``."""
    return [e for e in iter_expressions(value) if isinstance(e, (Reference, SplatReference))]


def lookup_path(value: Any, path: tuple[PathStep, ...]) -> Any:
    """
    Walk ``path`` into ``value``.

    Raises:
        LookupError: If a step does not exist
    """
    current = value
    for step in path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict):
            if step not in current:
                raise KeyError(step)
            current = current[step]
        elif isinstance(current, (list, tuple)) and isinstance(step, int):
            current = current[step]
        else:
            raise LookupError(step)
    return current


# ---------------------------------------------------------------------------
# Substitution and evaluation
# ---------------------------------------------------------------------------


def substitute(value: Any, resolve: Callable[[VariableRef | IterationRef], Any]) -> Any:
    """
    Replace variable and iteration references inside ``value``.

    ``resolve`` returns the literal for a VariableRef/IterationRef. Resource
    references keep their shape; an expression in their key is substituted.
    Templates collapse to plain strings once every part is literal.
    """
    if isinstance(value, (VariableRef, IterationRef)):
        return resolve(value)
    if isinstance(value, Reference):
        key = value.key
        if isinstance(key, EXPRESSION_TYPES):
            key = substitute(key, resolve)
            if isinstance(key, EXPRESSION_TYPES):
                raise ValidationError("expression", str(value), "index must resolve to a literal")
        return Reference(value.type, value.name, key, value.path)
    if isinstance(value, SplatReference):
        return value
    if isinstance(value, Template):
        parts = tuple(substitute(p, resolve) for p in value.parts)
        if any(isinstance(p, EXPRESSION_TYPES) for p in parts):
            return Template(_merge_text(parts))
        return "".join(to_text(p) for p in parts)
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(v, resolve) for v in value]
    return value


def _merge_text(parts: tuple[Any, ...]) -> tuple[Any, ...]:
    merged: list[Any] = []
    for part in parts:
        if not isinstance(part, EXPRESSION_TYPES):
            part = to_text(part)
            if merged and isinstance(merged[-1], str):
                merged[-1] += part
                continue
        merged.append(part)
    return tuple(merged)


def to_text(value: Any) -> str:
    """Render a literal the way string interpolation does."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True)


def evaluate(
    value: Any,
    resolve_reference: Callable[[Reference], Any],
    resolve_splat: Callable[[SplatReference], Any],
) -> Any:
    """
    Evaluate resource references inside an already-substituted value.

    Resolvers return :data:`UNKNOWN` for values only known after apply; an
    unknown part makes an enclosing template unknown.
    """
    if isinstance(value, Reference):
        return resolve_reference(value)
    if isinstance(value, SplatReference):
        return resolve_splat(value)
    if isinstance(value, Template):
        rendered = [evaluate(p, resolve_reference, resolve_splat) for p in value.parts]
        if any(is_unknown(p) for p in rendered):
            return UNKNOWN
        return "".join(to_text(p) for p in rendered)
    if isinstance(value, (VariableRef, IterationRef)):
        raise ValidationError("expression", str(value), "was not substituted before evaluation")
    if isinstance(value, dict):
        return {k: evaluate(v, resolve_reference, resolve_splat) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [evaluate(v, resolve_reference, resolve_splat) for v in value]
    return value


def sort_index_keys(keys: list[IndexKey | None]) -> list[IndexKey | None]:
    """Order expanded keys: integers numerically, then strings lexically."""
    return sorted(keys, key=lambda k: (0, k, "") if isinstance(k, int) else (1, 0, k or ""))
