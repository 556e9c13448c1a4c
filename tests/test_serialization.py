"""Tests for declaration serialization (JSON wire format)."""

import json

import pytest

from cairn import Declaration, Module, Resource, Variable, cel, ref
from cairn.expressions import resolve
from cairn.serialization import (
    FORMAT_ID,
    SUPPORTED_VERSIONS,
    _decode_expression,
    _encode_expression,
    dump_declaration,
    dump_declaration_to_dict,
    load_declaration,
    load_declaration_from_dict,
)


def eks_declaration():
    return Declaration(
        resources=[
            Resource("net", "network", {"cidr": "10.0.0.0/16", "azs": ["a", "b"]}),
            Module(
                name="eks",
                inputs={"subnets": ref("net.subnet_ids")},
                resources=[
                    Resource("cluster", "cluster", {"subnets": cel("var.subnets")}),
                    Resource("workers", "node_group", {"cluster": ref("cluster.name")}),
                ],
                outputs={"endpoint": ref("cluster.endpoint")},
            ),
            Resource("settle", "wait", {"duration": "30s"}, depends_on=["eks"]),
            Resource(
                "hub",
                "helm_release",
                {"values": {"host": "${eks.endpoint}"}},
                depends_on=["settle"],
            ),
        ],
        variables={
            "region": Variable(default="eu-west-1", description="Target region"),
            "token": Variable(),
        },
    )


def envelope(resources, **extra):
    return {"format": FORMAT_ID, "version": 1, "resources": resources, **extra}


class TestRoundTrip:
    """Round-trip serialization."""

    def test_simple(self):
        """Two resources round-trip."""
        declaration = Declaration(
            resources=[
                Resource("net", "network", {"cidr": "10.0.0.0/16"}),
                Resource("clu", "cluster", {"subnets": ref("net.subnet_ids")}),
            ]
        )
        assert load_declaration(dump_declaration(declaration)) == declaration

    def test_complete_example(self):
        """Modules, waits, templates and variables round-trip."""
        declaration = eks_declaration()
        loaded = load_declaration(dump_declaration(declaration))
        assert loaded == declaration
        assert loaded.variables["token"].required
        assert loaded.variables["region"].description == "Target region"


class TestExpressionEncoding:
    """Attribute expression encoding."""

    def test_ref(self):
        """ref marker encodes to $ref."""
        s = dump_declaration(Declaration(resources=[Resource("a", "x", {"v": ref("b.id")})]))
        assert '"$ref"' in s
        loaded = load_declaration(s)
        assert loaded.resources[0].attributes["v"] == ref("b.id")

    def test_cel(self):
        """cel marker encodes to $cel."""
        s = dump_declaration(Declaration(resources=[Resource("a", "x", {"v": cel("b.n + 1")})]))
        assert '"$cel"' in s
        assert load_declaration(s).resources[0].attributes["v"].expr == "b.n + 1"

    def test_templates_stay_strings(self):
        encoded = _encode_expression("https://${clu.endpoint}")
        assert encoded == "https://${clu.endpoint}"

    def test_nested_structures(self):
        """Nested dicts and lists encode recursively."""
        value = {"inner": [1, ref("b.id"), {"k": cel("x.y")}]}
        decoded = _decode_expression(json.loads(json.dumps(_encode_expression(value))))
        assert decoded["inner"][0] == 1
        assert decoded["inner"][1] == ref("b.id")
        assert decoded["inner"][2]["k"].expr == "x.y"

    def test_tuple_becomes_list(self):
        assert _encode_expression(("a", ref("b.id"))) == ["a", {"$ref": "b.id"}]

    def test_literal_escape(self):
        """Plain dict that looks like a marker wraps in $literal."""
        literal_dict = {"$ref": "x"}  # Plain dict, not ref("x")
        encoded = _encode_expression(literal_dict)
        assert encoded == {"$literal": {"$ref": "x"}}
        assert _decode_expression(encoded) == {"$ref": "x"}

    def test_literal_strings_are_not_templates(self):
        """Strings under $literal decode escaped, so they render verbatim."""
        decoded = _decode_expression({"$literal": {"cmd": 'echo "${HOME}"', "n": 1}})
        assert decoded == {"cmd": 'echo "$${HOME}"', "n": 1}
        assert resolve(decoded, {}) == {"cmd": 'echo "${HOME}"', "n": 1}


class TestValidation:
    """Validation rejects malformed input."""

    def test_envelope_format(self):
        """Reject wrong format."""
        with pytest.raises(ValueError, match="format must be"):
            load_declaration_from_dict({"format": "other", "version": 1, "resources": []})

    def test_envelope_version(self):
        """Reject unsupported version."""
        assert 99 not in SUPPORTED_VERSIONS
        with pytest.raises(ValueError, match="version.*not supported"):
            load_declaration_from_dict({"format": FORMAT_ID, "version": 99, "resources": []})

    def test_envelope_missing_resources(self):
        with pytest.raises(ValueError, match="'resources'"):
            load_declaration_from_dict({"format": FORMAT_ID, "version": 1})

    def test_not_an_object(self):
        with pytest.raises(ValueError, match="JSON object"):
            load_declaration("[]")

    def test_entry_without_name(self):
        with pytest.raises(ValueError, match="string 'name'"):
            load_declaration_from_dict(envelope([{"kind": "network"}]))

    def test_resource_without_kind(self):
        with pytest.raises(ValueError, match="'kind'"):
            load_declaration_from_dict(envelope([{"name": "net"}]))

    def test_unsupported_type(self):
        """Reject entry with unsupported type."""
        with pytest.raises(ValueError, match="unsupported type"):
            load_declaration_from_dict(envelope([{"name": "net", "type": "data"}]))

    def test_module_without_resources(self):
        with pytest.raises(ValueError, match="'resources' array"):
            load_declaration_from_dict(envelope([{"name": "eks", "type": "module"}]))

    def test_depends_on_must_be_strings(self):
        doc = envelope([{"name": "net", "kind": "network", "depends_on": [1]}])
        with pytest.raises(ValueError, match=r"depends_on\[0\] must be string"):
            load_declaration_from_dict(doc)

    def test_attributes_must_be_object(self):
        doc = envelope([{"name": "net", "kind": "network", "attributes": []}])
        with pytest.raises(ValueError, match="'attributes' must be an object"):
            load_declaration_from_dict(doc)

    def test_marker_value_must_be_string(self):
        doc = envelope([{"name": "net", "kind": "network", "attributes": {"x": {"$ref": 3}}}])
        with pytest.raises(ValueError, match=r"\$ref value must be a string"):
            load_declaration_from_dict(doc)

    def test_invalid_name(self):
        """Names that cannot be used in expressions are rejected on construction."""
        with pytest.raises(ValueError, match="must start with a letter"):
            load_declaration_from_dict(envelope([{"name": "my-net", "kind": "network"}]))

    def test_variables_must_be_objects(self):
        with pytest.raises(ValueError, match="Variable 'region'"):
            load_declaration_from_dict(envelope([], variables={"region": "eu-west-1"}))


class TestDeterminism:
    """Deterministic output."""

    def test_identical_output(self):
        """Same declaration produces identical JSON."""
        assert dump_declaration(eks_declaration()) == dump_declaration(eks_declaration())

    def test_dict_equals_dump(self):
        """dump_declaration_to_dict + json.dumps(sort_keys=True) equals dump_declaration."""
        declaration = eks_declaration()
        d = dump_declaration_to_dict(declaration)
        assert json.dumps(d, sort_keys=True) == dump_declaration(declaration)

    def test_declaration_order_kept(self):
        """Resources keep declaration order; it breaks ties in the apply order."""
        d = dump_declaration_to_dict(eks_declaration())
        assert [entry["name"] for entry in d["resources"]] == ["net", "eks", "settle", "hub"]

    def test_kind_defaults_to_resource(self):
        loaded = load_declaration_from_dict(envelope([{"name": "net", "kind": " network "}]))
        assert loaded.resources == [Resource("net", "network")]


class TestLoadInput:
    def test_bytes_input(self):
        """load_declaration accepts bytes, decodes utf-8."""
        s = dump_declaration(eks_declaration())
        assert load_declaration(s.encode("utf-8")) == eks_declaration()
