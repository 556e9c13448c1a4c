"""Static reference analysis over attribute expressions.

Finds every identifier an expression reads, without evaluating anything, so
the graph builder can infer dependency edges. Handles all three expression
forms: ref() markers, cel() markers and ${...} templates inside strings.
"""

import re
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import celpy
from cachetools import LRUCache, cached
from lark import Tree

from cairn.params import cel, ref

# `${expr}` interpolates; `$${...}` is an escape for a literal `${...}`.
TEMPLATE_PATTERN = re.compile(r"(\$?)\$\{([^}]+)\}")

# Comprehension macros bind their first argument as a local variable.
_MACROS = frozenset({"all", "exists", "exists_one", "filter", "map"})

# Type names CEL resolves on its own.
CEL_TYPE_NAMES = frozenset(
    {"bool", "bytes", "double", "dyn", "int", "list", "map", "null_type", "string", "type", "uint"}
)

_ENV = celpy.Environment()
_PARSE_LOCK = threading.Lock()


@dataclass(frozen=True)
class Reference:
    """An identifier read by an attribute expression.

    Attributes:
        name: The identifier as written (local to the declaring scope).
        field: The first output field accessed on it, if statically known.
        attribute: The top-level attribute the expression belongs to.
        text: The expression text, for error messages.
    """

    name: str
    field: str | None
    attribute: str
    text: str


@cached(LRUCache(maxsize=4096), lock=threading.Lock())
def parse_cel(expr: str) -> Tree:
    """Parse a CEL expression, caching the syntax tree.

    Raises:
        celpy.CELParseError: If the expression is not valid CEL.
    """
    with _PARSE_LOCK:
        return _ENV.compile(expr)


def template_expressions(text: str) -> list[str]:
    """Return the CEL expressions embedded in a ${...} template string.

    Escaped `$${...}` sequences are literal text and are not returned.
    """
    return [
        match.group(2).strip()
        for match in TEMPLATE_PATTERN.finditer(text)
        if not match.group(1)
    ]


def is_template(value: Any) -> bool:
    return isinstance(value, str) and TEMPLATE_PATTERN.search(value) is not None


def escape_template(text: str) -> str:
    """Escape every `${` so the string renders literally."""
    return text.replace("${", "$${")


def collect_references(attributes: dict[str, Any]) -> list[Reference]:
    """Collect every reference made by a mapping of attribute expressions.

    Results are in attribute order, then in the order references appear.

    Raises:
        celpy.CELParseError: If a cel() marker or template is not valid CEL.
    """
    refs: list[Reference] = []
    for attribute, value in attributes.items():
        refs.extend(_walk(value, attribute))
    return refs


def _walk(value: Any, attribute: str) -> Iterator[Reference]:
    if isinstance(value, ref):
        segments = value.segments
        yield Reference(
            name=value.resource,
            field=segments[0] if segments else None,
            attribute=attribute,
            text=value.path,
        )
    elif isinstance(value, cel):
        yield from cel_references(value.expr, attribute)
    elif is_template(value):
        for expr in template_expressions(value):
            yield from cel_references(expr, attribute)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _walk(item, attribute)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk(item, attribute)


def cel_references(expr: str, attribute: str = "") -> list[Reference]:
    """Return the free identifiers read by a CEL expression."""
    tree = parse_cel(expr)
    bound = _macro_bound_names(tree) | CEL_TYPE_NAMES

    fields: dict[str, set[str]] = {}
    for node in tree.iter_subtrees_topdown():
        if node.data == "member_dot":
            kids = _children(node)
            root = _leading_ident(kids[0])
            if root is not None and root not in bound:
                fields.setdefault(root, set()).add(str(kids[1]))

    seen: set[tuple[str, str | None]] = set()
    refs: list[Reference] = []
    for node in tree.iter_subtrees_topdown():
        if node.data != "ident":
            continue
        name = str(_children(node)[0])
        if name in bound:
            continue
        for field in sorted(fields.get(name, {None})):
            if (name, field) in seen:
                continue
            seen.add((name, field))
            refs.append(Reference(name=name, field=field, attribute=attribute, text=expr))
    return refs


def _children(node: Tree) -> list[Any]:
    return [child for child in node.children if child is not None]


def _leading_ident(node: Any) -> str | None:
    """Return the identifier a member chain starts with, if it is a bare name."""
    while isinstance(node, Tree):
        kids = _children(node)
        if node.data == "ident":
            return str(kids[0])
        if len(kids) != 1:
            return None
        node = kids[0]
    return None


def _macro_bound_names(tree: Tree) -> set[str]:
    bound: set[str] = set()
    for node in tree.iter_subtrees():
        if node.data != "member_dot_arg":
            continue
        kids = _children(node)
        if len(kids) < 3 or str(kids[1]) not in _MACROS:
            continue
        exprlist = kids[2]
        if isinstance(exprlist, Tree) and exprlist.children:
            name = _leading_ident(exprlist.children[0])
            if name is not None:
                bound.add(name)
    return bound
