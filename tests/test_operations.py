"""Tests for operation diffing."""

import pytest

from cairn.hashing import hash_attributes
from cairn.operations import OperationKind, diff, exists
from cairn.store.base import ResourceState, StateStatus

DESIRED = {"cidr": "10.0.0.0/16"}


def applied(attributes=DESIRED, **kwargs):
    return ResourceState(
        name="net",
        kind="network",
        status=StateStatus.APPLIED,
        remote_id="vpc-1",
        attributes=dict(attributes),
        digest=hash_attributes(attributes),
        **kwargs,
    )


class TestExists:
    @pytest.mark.parametrize(
        "state,expected",
        [
            (None, False),
            (ResourceState(name="net", kind="network"), False),
            (ResourceState(name="net", kind="network", status=StateStatus.APPLIED), True),
            (ResourceState(name="net", kind="network", status=StateStatus.FAILED), False),
            (
                ResourceState(name="net", kind="network", status=StateStatus.FAILED, remote_id="vpc-1"),
                True,
            ),
            (
                ResourceState(name="net", kind="network", status=StateStatus.PENDING, remote_id="vpc-1"),
                True,
            ),
        ],
    )
    def test_exists(self, state, expected):
        assert exists(state) is expected


class TestDiff:
    """Tests for diff."""

    def test_create(self):
        operation = diff("net", DESIRED, None)
        assert operation.kind == OperationKind.CREATE
        assert operation.digest == hash_attributes(DESIRED)

    def test_noop(self):
        """Test that an unchanged applied resource needs no driver call."""
        assert diff("net", dict(DESIRED), applied()).kind == OperationKind.NOOP

    def test_update(self):
        assert diff("net", {"cidr": "10.1.0.0/16"}, applied()).kind == OperationKind.UPDATE

    def test_failed_with_remote_id_updates(self):
        """Test that a failed resource that exists is updated, not created again."""
        state = applied()
        state.status = StateStatus.FAILED
        assert diff("net", DESIRED, state).kind == OperationKind.UPDATE

    def test_recovered_without_digest_updates(self):
        state = applied()
        state.digest = None
        assert diff("net", DESIRED, state).kind == OperationKind.UPDATE

    def test_absent_creates(self):
        state = ResourceState(name="net", kind="network", status=StateStatus.ABSENT)
        assert diff("net", DESIRED, state).kind == OperationKind.CREATE

    def test_delete(self):
        operation = diff("net", None, applied())
        assert operation.kind == OperationKind.DELETE
        assert operation.digest is None

    def test_delete_of_nothing_is_noop(self):
        assert diff("net", None, None).kind == OperationKind.NOOP
        absent = ResourceState(name="net", kind="network")
        assert diff("net", None, absent).kind == OperationKind.NOOP
