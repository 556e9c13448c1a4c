"""Declaration serialization: JSON wire format for cairn declaration sets.

Encodes resources, modules, variables and attribute expressions (ref, cel)
for storage and transmission. Distinct from state persistence in
store/disk.py.
"""

import json
from typing import Any

from cairn.declaration import Declaration, Module, Resource, Variable
from cairn.params import cel, ref
from cairn.references import escape_template

SUPPORTED_VERSIONS = {1}
FORMAT_ID = "cairn-declaration"

RESERVED_KEYS = frozenset({"$ref", "$cel", "$literal"})


def _encode_expression(value: Any) -> Any:
    """Recursively encode an attribute expression to JSON-serializable form."""
    if isinstance(value, ref):
        return {"$ref": value.path}

    if isinstance(value, cel):
        return {"$cel": value.expr}

    if isinstance(value, dict):
        encoded = {k: _encode_expression(v) for k, v in value.items()}
        # Collision: plain dict that would decode as marker -> wrap in $literal
        if len(encoded) == 1:
            (single_key,) = encoded.keys()
            if single_key in RESERVED_KEYS:
                return {"$literal": encoded}
        return encoded

    if isinstance(value, (list, tuple)):
        return [_encode_expression(item) for item in value]

    # Primitives: None, bool, int, float, str
    return value


def _decode_expression(obj: Any, literal_mode: bool = False) -> Any:
    """Recursively decode a JSON value to an attribute expression."""
    if literal_mode:
        if isinstance(obj, dict):
            return {k: _decode_expression(v, literal_mode=True) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_decode_expression(item, literal_mode=True) for item in obj]
        if isinstance(obj, str):
            return escape_template(obj)
        return obj

    if isinstance(obj, dict):
        if len(obj) == 1:
            (key, val) = next(iter(obj.items()))
            if key == "$ref":
                if not isinstance(val, str):
                    raise ValueError(f"$ref value must be a string, got {type(val).__name__}")
                return ref(val)
            if key == "$cel":
                if not isinstance(val, str):
                    raise ValueError(f"$cel value must be a string, got {type(val).__name__}")
                return cel(val)
            if key == "$literal":
                return _decode_expression(val, literal_mode=True)
        return {k: _decode_expression(v) for k, v in obj.items()}

    if isinstance(obj, list):
        return [_decode_expression(item) for item in obj]

    return obj


def _encode_expressions(expressions: dict[str, Any]) -> dict[str, Any]:
    """Encode an expression map with sorted keys for determinism."""
    return dict(sorted((k, _encode_expression(v)) for k, v in expressions.items()))


def _decode_expressions(obj: Any, where: str, field_name: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{where} '{field_name}' must be an object")
    return {k: _decode_expression(v) for k, v in obj.items()}


def _encode_entry(entry: Resource | Module) -> dict:
    """Encode a single declaration (Resource or Module) to a JSON object."""
    if isinstance(entry, Resource):
        return {
            "type": "resource",
            "name": entry.name,
            "kind": entry.kind,
            "attributes": _encode_expressions(entry.attributes),
            "depends_on": list(entry.depends_on),
        }
    return {
        "type": "module",
        "name": entry.name,
        "inputs": _encode_expressions(entry.inputs),
        "resources": [_encode_entry(child) for child in entry.resources],
        "outputs": _encode_expressions(entry.outputs),
        "depends_on": list(entry.depends_on),
    }


def _decode_entry(obj: Any, index: int) -> Resource | Module:
    """Decode a JSON object to Resource or Module. Validates before construction."""
    if not isinstance(obj, dict):
        raise ValueError(f"Declaration [{index}] must be an object")

    name = obj.get("name")
    if not isinstance(name, str):
        raise ValueError(f"Declaration [{index}] must have string 'name'")
    where = f"Declaration '{name}'"

    depends_on = obj.get("depends_on", [])
    if not isinstance(depends_on, list):
        raise ValueError(f"{where} 'depends_on' must be an array")
    for i, dep in enumerate(depends_on):
        if not isinstance(dep, str):
            raise ValueError(
                f"{where} depends_on[{i}] must be string, got {type(dep).__name__}"
            )

    entry_type = obj.get("type", "resource")
    if entry_type == "resource":
        kind = obj.get("kind")
        if not isinstance(kind, str) or not kind.strip():
            raise ValueError(f"{where} must have non-empty string 'kind'")
        return Resource(
            name=name,
            kind=kind.strip(),
            attributes=_decode_expressions(obj.get("attributes", {}), where, "attributes"),
            depends_on=list(depends_on),
        )
    if entry_type == "module":
        resources = obj.get("resources")
        if not isinstance(resources, list):
            raise ValueError(f"{where} must have 'resources' array")
        return Module(
            name=name,
            inputs=_decode_expressions(obj.get("inputs", {}), where, "inputs"),
            resources=[_decode_entry(child, i) for i, child in enumerate(resources)],
            outputs=_decode_expressions(obj.get("outputs", {}), where, "outputs"),
            depends_on=list(depends_on),
        )
    raise ValueError(f"{where} has unsupported type: {entry_type!r}")


def _encode_variables(variables: dict[str, Variable]) -> dict:
    encoded = {}
    for name, variable in sorted(variables.items()):
        obj: dict[str, Any] = {}
        if not variable.required:
            obj["default"] = variable.default
        if variable.description:
            obj["description"] = variable.description
        encoded[name] = obj
    return encoded


def _decode_variables(obj: Any) -> dict[str, Variable]:
    if not isinstance(obj, dict):
        raise ValueError("Document 'variables' must be an object")
    variables = {}
    for name, entry in obj.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Variable '{name}' must be an object")
        description = entry.get("description", "")
        if "default" in entry:
            variables[name] = Variable(default=entry["default"], description=description)
        else:
            variables[name] = Variable(description=description)
    return variables


def _validate_envelope(obj: Any) -> None:
    """Validate top-level envelope."""
    if not isinstance(obj, dict):
        raise ValueError("Document must be a JSON object")
    fmt = obj.get("format")
    if fmt != FORMAT_ID:
        raise ValueError(f"Document format must be '{FORMAT_ID}', got {fmt!r}")
    version = obj.get("version")
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(
            f"Document version {version} is not supported. Supported: {sorted(SUPPORTED_VERSIONS)}"
        )
    if not isinstance(obj.get("resources"), list):
        raise ValueError("Document must have 'resources' array")


def dump_declaration_to_dict(declaration: Declaration) -> dict:
    """Serialize a declaration set to an envelope dict."""
    return {
        "format": FORMAT_ID,
        "version": 1,
        "variables": _encode_variables(declaration.variables),
        "resources": [_encode_entry(entry) for entry in declaration.resources],
    }


def dump_declaration(declaration: Declaration) -> str:
    """Serialize a declaration set to a JSON string. Deterministic output."""
    return json.dumps(dump_declaration_to_dict(declaration), sort_keys=True)


def load_declaration_from_dict(obj: dict) -> Declaration:
    """Load a declaration set from an envelope dict."""
    _validate_envelope(obj)
    return Declaration(
        resources=[_decode_entry(entry, i) for i, entry in enumerate(obj["resources"])],
        variables=_decode_variables(obj.get("variables", {})),
    )


def load_declaration(data: str | bytes) -> Declaration:
    """Deserialize a JSON string or bytes to a declaration set."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return load_declaration_from_dict(json.loads(data))
