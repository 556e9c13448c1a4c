"""MemoryStore: In-memory state storage for testing."""

from cairn.store.base import ResourceState, StateStore


class MemoryStore(StateStore):
    """In-memory state store backed by a dictionary.

    Fast and ephemeral - suitable for testing and dry runs. State is lost when
    the store instance is destroyed.
    """

    def __init__(self, states: dict[str, ResourceState] | None = None) -> None:
        """Initialize memory store.

        Args:
            states: Optional initial states, keyed by name.
        """
        super().__init__()
        self._states: dict[str, ResourceState] = {}
        for state in (states or {}).values():
            self._states[state.name] = state

    def names(self) -> list[str]:
        return sorted(self._states)

    def _read(self, name: str) -> ResourceState | None:
        return self._states.get(name)

    def _write(self, state: ResourceState) -> None:
        self._states[state.name] = state

    def _remove(self, name: str) -> None:
        del self._states[name]

    def clear(self) -> None:
        """Clear all states (mainly for testing)."""
        self._states.clear()
        self.reset_stats()
