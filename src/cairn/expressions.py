"""Value resolution: evaluates attribute expressions against applied outputs."""

import base64
import json
import re
import threading
from typing import TYPE_CHECKING, Any

import celpy
from cachetools import LRUCache, cached
from celpy import celtypes

from cairn.errors import ResolutionError, UnresolvedReference
from cairn.params import cel, ref
from cairn.references import TEMPLATE_PATTERN, cel_references, is_template, parse_cel

if TYPE_CHECKING:
    from cairn.graph import ResourceNode


def resolve(expression: Any, environment: dict[str, Any]) -> Any:
    """Resolve a single expression to a concrete value.

    Args:
        expression: A literal, list, dict, ref() or cel() marker, or a string
            with ${...} interpolations.
        environment: Identifier -> value. Resource identifiers map to the
            output snapshot of an applied resource; `var` maps to variables.

    Returns:
        The resolved value. Containers are resolved recursively.

    Raises:
        UnresolvedReference: If the expression reads an identifier that is not
            in the environment.
        ResolutionError: If evaluation fails (bad path, bad index, malformed
            encoded value, CEL error).
    """
    if isinstance(expression, ref):
        return _resolve_ref(expression, environment)
    if isinstance(expression, cel):
        return _evaluate_cel(expression.expr, environment)
    if is_template(expression):
        return _evaluate_template(expression, environment)
    if isinstance(expression, dict):
        return {k: resolve(v, environment) for k, v in expression.items()}
    if isinstance(expression, (list, tuple)):
        return [resolve(item, environment) for item in expression]
    return expression


def resolve_attributes(
    attributes: dict[str, Any],
    environment: dict[str, Any],
    resource: str | None = None,
) -> dict[str, Any]:
    """Resolve every attribute of a resource.

    Errors are tagged with the resource and attribute that failed.
    """
    resolved = {}
    for attribute, expression in attributes.items():
        try:
            resolved[attribute] = resolve(expression, environment)
        except ResolutionError as e:
            raise e.located(resource, attribute) from e
    return resolved


class ValueResolver:
    """Per-cycle resolver that evaluates each resource's attributes once.

    The first successful resolution of a resource is memoized; later calls in
    the same cycle return the memoized mapping without re-evaluating.
    """

    def __init__(self) -> None:
        self._resolved: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def resolve_node(
        self, node: "ResourceNode", environment: dict[str, Any]
    ) -> dict[str, Any]:
        with self._lock:
            if node.name in self._resolved:
                return self._resolved[node.name]

        values = resolve_attributes(node.attributes, environment, resource=node.name)

        with self._lock:
            return self._resolved.setdefault(node.name, values)

    def resolved(self, name: str) -> dict[str, Any] | None:
        """Return the memoized attributes of a resource, if resolved this cycle."""
        with self._lock:
            return self._resolved.get(name)

    def reset(self) -> None:
        """Forget all memoized values (start of a new cycle)."""
        with self._lock:
            self._resolved.clear()


def _lookup(environment: dict[str, Any], name: str, expression: Any) -> Any:
    if name not in environment:
        raise UnresolvedReference(
            f"'{name}' is not available; it is not a dependency or has not been applied",
            expression=expression,
        )
    return environment[name]


def _resolve_ref(marker: ref, environment: dict[str, Any]) -> Any:
    value = _lookup(environment, marker.resource, marker.path)
    walked = [marker.resource]
    for segment in marker.segments:
        if isinstance(value, dict):
            if segment not in value:
                raise ResolutionError(
                    f"'{'.'.join(walked)}' has no field '{segment}'",
                    expression=marker.path,
                )
            value = value[segment]
        elif isinstance(value, (list, tuple)):
            try:
                value = value[int(segment)]
            except ValueError as e:
                raise ResolutionError(
                    f"'{'.'.join(walked)}' is a list; '{segment}' is not an index",
                    expression=marker.path,
                ) from e
            except IndexError as e:
                raise ResolutionError(
                    f"index {segment} out of range for '{'.'.join(walked)}' "
                    f"(length {len(value)})",
                    expression=marker.path,
                ) from e
        else:
            raise ResolutionError(
                f"'{'.'.join(walked)}' is a {type(value).__name__}, cannot select '{segment}'",
                expression=marker.path,
            )
        walked.append(segment)
    return value


def _evaluate_template(text: str, environment: dict[str, Any]) -> Any:
    """Evaluate ${...} interpolations in a string.

    A string that is exactly one ${expr} evaluates to the typed value; any
    other template is rendered as a string in a single pass, so rendered
    values are never scanned again. `$${...}` renders as a literal `${...}`.
    """
    matches = list(TEMPLATE_PATTERN.finditer(text))
    if not matches:
        return text

    (first, *rest) = matches
    if not rest and not first.group(1) and text.strip() == first.group(0):
        return _evaluate_cel(first.group(2).strip(), environment)

    def render(match: re.Match[str]) -> str:
        if match.group(1):
            return match.group(0)[1:]
        return _render(_evaluate_cel(match.group(2).strip(), environment))

    return TEMPLATE_PATTERN.sub(render, text)


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _evaluate_cel(expression: str, environment: dict[str, Any]) -> Any:
    """Evaluate a single CEL expression (without ${...} delimiters)."""
    try:
        program = _program(expression)
    except celpy.CELParseError as e:
        raise ResolutionError(f"invalid CEL: {e}", expression=expression) from e

    for name in _unbound_names(expression, environment):
        _lookup(environment, name, expression)

    activation = {
        name: celpy.json_to_cel(_jsonable(value)) for name, value in environment.items()
    }
    try:
        result = program.evaluate(activation)
    except celpy.CELEvalError as e:
        raise ResolutionError(str(e), expression=expression) from e
    except (ValueError, TypeError, KeyError, IndexError) as e:
        raise ResolutionError(str(e), expression=expression) from e

    if isinstance(result, celpy.CELEvalError):
        raise ResolutionError(str(result), expression=expression)
    return _cel_to_python(result, expression)


def _unbound_names(expression: str, environment: dict[str, Any]) -> list[str]:
    return [r.name for r in cel_references(expression) if r.name not in environment]


def _jsonable(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


def _cel_to_python(cel_value: Any, expression: str) -> Any:
    """Convert a CEL value to a plain Python value."""
    if cel_value is None:
        return None
    if isinstance(cel_value, celtypes.BoolType):
        return bool(cel_value)
    if isinstance(cel_value, bool):
        return cel_value
    if isinstance(cel_value, int):
        return int(cel_value)
    if isinstance(cel_value, float):
        return float(cel_value)
    if isinstance(cel_value, str):
        return str(cel_value)
    if isinstance(cel_value, bytes):
        try:
            return bytes(cel_value).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ResolutionError(
                "bytes result is not valid UTF-8", expression=expression
            ) from e
    if isinstance(cel_value, dict):
        return {str(k): _cel_to_python(v, expression) for k, v in cel_value.items()}
    if isinstance(cel_value, (list, tuple)):
        return [_cel_to_python(item, expression) for item in cel_value]
    # Timestamps, durations and type values render as strings.
    return str(cel_value)


# Custom CEL functions. Arguments arrive as CEL values; results go back
# through json_to_cel.


def _base64decode(value: Any) -> Any:
    """base64decode(s) - decodes standard base64 into a UTF-8 string."""
    try:
        decoded = base64.b64decode(str(value), validate=True)
        return celtypes.StringType(decoded.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"base64decode: malformed input: {e}") from e


def _base64encode(value: Any) -> Any:
    """base64encode(s) - encodes a UTF-8 string as standard base64."""
    return celtypes.StringType(base64.b64encode(str(value).encode("utf-8")).decode("ascii"))


def _jsonencode(value: Any) -> Any:
    """jsonencode(v) - serializes any value to a JSON string (sorted keys)."""
    return celtypes.StringType(
        json.dumps(_cel_to_python(value, "jsonencode"), sort_keys=True)
    )


def _jsondecode(value: Any) -> Any:
    """jsondecode(s) - parses a JSON string."""
    try:
        return celpy.json_to_cel(json.loads(str(value)))
    except json.JSONDecodeError as e:
        raise ValueError(f"jsondecode: malformed input: {e}") from e


def _join(items: Any, separator: Any) -> Any:
    """join(list, sep) - joins list items rendered as strings."""
    parts = [_render(_cel_to_python(item, "join")) for item in items]
    return celtypes.StringType(str(separator).join(parts))


def _split(value: Any, separator: Any) -> Any:
    """split(s, sep) - splits a string into a list of strings."""
    return celpy.json_to_cel(str(value).split(str(separator)))


def _lower(value: Any) -> Any:
    return celtypes.StringType(str(value).lower())


def _upper(value: Any) -> Any:
    return celtypes.StringType(str(value).upper())


def _replace(value: Any, old: Any, new: Any) -> Any:
    return celtypes.StringType(str(value).replace(str(old), str(new)))


def _coalesce(*values: Any) -> Any:
    """coalesce(a, b, ...) - first argument that is neither null nor empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


FUNCTIONS = {
    "base64decode": _base64decode,
    "base64encode": _base64encode,
    "jsonencode": _jsonencode,
    "jsondecode": _jsondecode,
    "join": _join,
    "split": _split,
    "lower": _lower,
    "upper": _upper,
    "replace": _replace,
    "coalesce": _coalesce,
}

_ENV = celpy.Environment()


@cached(LRUCache(maxsize=1024), lock=threading.Lock())
def _program(expression: str) -> Any:
    """Compile a CEL expression into a reusable program."""
    return _ENV.program(parse_cel(expression), functions=FUNCTIONS)
