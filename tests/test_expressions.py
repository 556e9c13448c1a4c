"""Tests for value resolution."""

import base64
import threading

import pytest

from cairn import Declaration, GraphBuilder, Resource, cel, ref
from cairn.errors import ResolutionError, UnresolvedReference
from cairn.expressions import ValueResolver, resolve, resolve_attributes

ENV = {
    "net": {"subnet_ids": ["subnet-a", "subnet-b"], "cidr": "10.0.0.0/16"},
    "clu": {
        "endpoint": "https://prod.eks",
        "certificate_authority": base64.b64encode(b"CA-DATA").decode(),
        "port": 443,
        "tags": {"team": "data"},
    },
    "var": {"region": "eu-west-1", "replicas": 3, "flag": True},
}


class TestLiterals:
    """Tests for values that need no evaluation."""

    def test_scalars(self):
        for value in [None, True, 7, 1.5, "plain"]:
            assert resolve(value, ENV) == value

    def test_containers(self):
        assert resolve({"a": [1, {"b": "c"}]}, ENV) == {"a": [1, {"b": "c"}]}

    def test_tuple_becomes_list(self):
        assert resolve((1, 2), ENV) == [1, 2]


class TestRefs:
    """Tests for ref() markers."""

    def test_field(self):
        assert resolve(ref("clu.endpoint"), ENV) == "https://prod.eks"

    def test_list_index(self):
        assert resolve(ref("net.subnet_ids.1"), ENV) == "subnet-b"

    def test_nested_map(self):
        assert resolve(ref("clu.tags.team"), ENV) == "data"

    def test_whole_resource(self):
        assert resolve(ref("net"), ENV) == ENV["net"]

    def test_missing_resource(self):
        with pytest.raises(UnresolvedReference, match="'rel' is not available"):
            resolve(ref("rel.name"), ENV)

    def test_missing_field(self):
        with pytest.raises(ResolutionError, match="has no field 'token'"):
            resolve(ref("clu.token"), ENV)

    def test_index_out_of_range(self):
        with pytest.raises(ResolutionError, match="out of range"):
            resolve(ref("net.subnet_ids.5"), ENV)

    def test_non_numeric_index(self):
        with pytest.raises(ResolutionError, match="not an index"):
            resolve(ref("net.subnet_ids.first"), ENV)

    def test_missing_field_is_not_unresolved(self):
        """Test that a bad path is a resolution error, not a missing reference."""
        with pytest.raises(ResolutionError) as excinfo:
            resolve(ref("clu.token"), ENV)
        assert not isinstance(excinfo.value, UnresolvedReference)


class TestCel:
    """Tests for cel() markers."""

    def test_member(self):
        assert resolve(cel("clu.port"), ENV) == 443

    def test_arithmetic_on_variables(self):
        assert resolve(cel("var.replicas * 2"), ENV) == 6

    def test_bool_result(self):
        result = resolve(cel("var.flag && clu.port == 443"), ENV)
        assert result is True

    def test_index(self):
        assert resolve(cel("net.subnet_ids[0]"), ENV) == "subnet-a"

    def test_list_result(self):
        assert resolve(cel("net.subnet_ids"), ENV) == ["subnet-a", "subnet-b"]

    def test_map_index(self):
        assert resolve(cel('clu.tags["team"]'), ENV) == "data"

    def test_unbound_identifier(self):
        with pytest.raises(UnresolvedReference):
            resolve(cel("rel.status"), ENV)

    def test_index_out_of_range(self):
        with pytest.raises(ResolutionError):
            resolve(cel("net.subnet_ids[9]"), ENV)

    def test_invalid_syntax(self):
        with pytest.raises(ResolutionError, match="invalid CEL"):
            resolve(cel("clu.("), ENV)


class TestFunctions:
    """Tests for the custom CEL functions."""

    def test_base64decode(self):
        assert resolve(cel("base64decode(clu.certificate_authority)"), ENV) == "CA-DATA"

    def test_base64decode_malformed(self):
        with pytest.raises(ResolutionError) as excinfo:
            resolve(cel('base64decode("not base64!")'), ENV)
        assert "base64decode" in str(excinfo.value)

    def test_base64encode(self):
        assert resolve(cel('base64encode("hi")'), ENV) == "aGk="

    def test_jsonencode(self):
        assert resolve(cel("jsonencode(clu.tags)"), ENV) == '{"team": "data"}'

    def test_jsondecode(self):
        assert resolve(cel('jsondecode("{\\"a\\": [1, 2]}")'), ENV) == {"a": [1, 2]}

    def test_join_and_split(self):
        assert resolve(cel('join(net.subnet_ids, ",")'), ENV) == "subnet-a,subnet-b"
        assert resolve(cel('split("a,b", ",")'), ENV) == ["a", "b"]

    def test_case_and_replace(self):
        assert resolve(cel('upper("eks")'), ENV) == "EKS"
        assert resolve(cel('lower("EKS")'), ENV) == "eks"
        assert resolve(cel('replace(var.region, "-", "_")'), ENV) == "eu_west_1"

    def test_coalesce(self):
        assert resolve(cel('coalesce("", var.region)'), ENV) == "eu-west-1"


class TestTemplates:
    """Tests for ${...} string templates."""

    def test_single_expression_keeps_type(self):
        assert resolve("${clu.port}", ENV) == 443
        assert resolve("${net.subnet_ids}", ENV) == ["subnet-a", "subnet-b"]

    def test_interpolation(self):
        assert resolve("${clu.endpoint}:${clu.port}", ENV) == "https://prod.eks:443"

    def test_interpolation_renders_containers_as_json(self):
        assert resolve("tags=${clu.tags}", ENV) == 'tags={"team": "data"}'

    def test_interpolation_renders_bools(self):
        assert resolve("enabled=${var.flag}", ENV) == "enabled=true"

    def test_unresolved(self):
        with pytest.raises(UnresolvedReference):
            resolve("${rel.name}", ENV)

    def test_rendered_values_are_not_rescanned(self):
        """Test that a value containing ${...} text is substituted as-is."""
        env = {"a": {"x": "${b.y}"}, "b": {"y": "SECRET"}}
        assert resolve("${a.x}-${b.y}", env) == "${b.y}-SECRET"

    def test_repeated_interpolation(self):
        assert resolve("${clu.port}/${clu.port}", ENV) == "443/443"

    def test_escape_renders_literal(self):
        assert resolve("$${HOME}", ENV) == "${HOME}"
        assert resolve('test -n "$${KUBE_TOKEN}"', ENV) == 'test -n "${KUBE_TOKEN}"'

    def test_escape_mixed_with_interpolation(self):
        assert (
            resolve("curl $${URL} -H ${clu.endpoint}", ENV)
            == "curl ${URL} -H https://prod.eks"
        )


class TestResolveAttributes:
    """Tests for error location tagging."""

    def test_error_carries_location(self):
        with pytest.raises(ResolutionError) as excinfo:
            resolve_attributes({"ca": cel("base64decode(var.region)")}, ENV, resource="kube")
        error = excinfo.value
        assert error.resource == "kube"
        assert error.attribute == "ca"
        assert error.expression == "base64decode(var.region)"

    def test_unresolved_keeps_type(self):
        with pytest.raises(UnresolvedReference) as excinfo:
            resolve_attributes({"e": ref("rel.x")}, ENV, resource="kube")
        assert excinfo.value.resource == "kube"


class TestValueResolver:
    """Tests for per-cycle memoization."""

    @pytest.fixture
    def node(self):
        graph = GraphBuilder().build(
            Declaration([Resource("net", "network"), Resource("clu", "cluster", {"s": ref("net.cidr")})])
        )
        return graph["clu"]

    def test_memoized(self, node):
        """Test that a second resolution returns the memoized value."""
        resolver = ValueResolver()
        first = resolver.resolve_node(node, {"net": {"cidr": "10.0.0.0/16"}})
        second = resolver.resolve_node(node, {"net": {"cidr": "changed"}})
        assert first == second == {"s": "10.0.0.0/16"}
        assert resolver.resolved("clu") == first

    def test_reset(self, node):
        resolver = ValueResolver()
        resolver.resolve_node(node, {"net": {"cidr": "a"}})
        resolver.reset()
        assert resolver.resolved("clu") is None
        assert resolver.resolve_node(node, {"net": {"cidr": "b"}}) == {"s": "b"}

    def test_concurrent_resolution_is_consistent(self, node):
        resolver = ValueResolver()
        results = []

        def worker():
            results.append(resolver.resolve_node(node, {"net": {"cidr": "x"}}))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(r is results[0] for r in results)
