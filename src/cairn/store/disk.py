"""DiskStore: Filesystem-based state storage."""

import json
from pathlib import Path

import structlog

from cairn.store.base import ResourceState, StateStore

logger = structlog.get_logger()


class DiskStore(StateStore):
    """Filesystem-based state store.

    Stores one JSON document per resource under `.cairn/state/`. Writes go to
    a temporary file that is then renamed over the target, so a crash never
    leaves a half-written document behind.
    """

    def __init__(self, state_dir: Path | str | None = None) -> None:
        """Initialize DiskStore.

        Args:
            state_dir: Directory to store state in. Defaults to `.cairn/state/`
                      in the current working directory.
        """
        super().__init__()
        if state_dir is None:
            state_dir = Path.cwd() / ".cairn" / "state"
        elif isinstance(state_dir, str):
            state_dir = Path(state_dir)

        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, name: str) -> Path:
        """Get filesystem path for a resource name."""
        if not name:
            raise ValueError("Resource name cannot be empty")
        # Sanitize for filesystem (module children contain dots, which are fine)
        safe_name = name.replace("/", "_").replace(":", "_")
        return self.state_dir / f"{safe_name}.json"

    def names(self) -> list[str]:
        names = []
        for path in self.state_dir.glob("*.json"):
            state = self._load(path)
            if state is not None:
                names.append(state.name)
        return sorted(names)

    def _load(self, path: Path) -> ResourceState | None:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.error("state_file_corrupt", path=str(path), error=str(e))
            raise ValueError(f"State file {path} is not valid JSON: {e}") from e
        return ResourceState.from_dict(data)

    def _read(self, name: str) -> ResourceState | None:
        return self._load(self._get_path(name))

    def _write(self, state: ResourceState) -> None:
        path = self._get_path(state.name)
        path.parent.mkdir(parents=True, exist_ok=True)

        payload = json.dumps(state.to_dict(), sort_keys=True, indent=2)

        # Write atomically (write to temp file, then rename)
        temp_path = path.with_suffix(path.suffix + ".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(payload)
        temp_path.replace(path)

    def _remove(self, name: str) -> None:
        self._get_path(name).unlink(missing_ok=True)
