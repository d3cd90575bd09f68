import json
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from loguru import logger

ACTIVE_JOB_KEY = "activeJobId"
SHOW_TRACKER_KEY = "showProgressTracker"


class ActiveJobStore(Protocol):
    """Key/value store holding the caller's "active job" reference"""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def clear(self, key: str) -> None: ...


class InMemoryJobStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def clear(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileJobStore:
    """Durable store backed by a single JSON object on disk.

    Survives process restarts the way browser storage survives a page reload.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError as e:
            logger.warning(f"Ignoring unreadable job store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def clear(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


def activate(store: ActiveJobStore, job_id: str) -> None:
    store.set(ACTIVE_JOB_KEY, job_id)
    store.set(SHOW_TRACKER_KEY, "true")


def release(store: ActiveJobStore, job_id: str) -> bool:
    """Clear the active job reference if it still points at ``job_id``"""
    if store.get(ACTIVE_JOB_KEY) != job_id:
        return False
    store.clear(ACTIVE_JOB_KEY)
    store.clear(SHOW_TRACKER_KEY)
    logger.debug(f"Released persisted reference to job {job_id}")
    return True


def resume_job_id(store: ActiveJobStore) -> Optional[str]:
    if store.get(SHOW_TRACKER_KEY) != "true":
        return None
    return store.get(ACTIVE_JOB_KEY)
