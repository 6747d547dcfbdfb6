"""Session storage: file-backed or in-memory blob store keyed by relative paths."""

from __future__ import annotations

import abc
import logging
import re
import secrets
import tempfile
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

IN_MEMORY_PATH = "[in-memory]"

_TEMP_PREFIX = ".quibble-"
_TEMP_SUFFIX = ".tmp"
_SLUG_MAX = 40
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


class StorageError(Exception):
    """A read or write failed for a reason other than the path being absent."""


def _slugify(name: str) -> str:
    slug = _NON_ALNUM.sub("-", name.lower()).strip("-")
    slug = slug[:_SLUG_MAX].rstrip("-")
    return slug or "session"


def generate_session_id(input_file: str | Path, now: datetime | None = None) -> str:
    """Build a sortable, human-legible session id.

    Example: ``design-doc-20261019-142530-a1b2c3``
    """
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{_slugify(Path(input_file).stem)}-{stamp}-{secrets.token_hex(3)}"


def _normalize(session_path: str) -> str:
    return "/".join(part for part in session_path.split("/") if part and part != ".")


class StorageAdapter(abc.ABC):
    """Key/path addressed store for one session's artifacts."""

    @property
    @abc.abstractmethod
    def session_id(self) -> str:
        ...

    @property
    @abc.abstractmethod
    def session_path(self) -> str:
        ...

    @abc.abstractmethod
    def init_session(self) -> None:
        ...

    @abc.abstractmethod
    def write(self, session_path: str, data: str) -> None:
        """Store *data*; readers never observe a partial write."""
        ...

    @abc.abstractmethod
    def read(self, session_path: str) -> str | None:
        """Return the stored content, or None if nothing is stored there."""
        ...

    @abc.abstractmethod
    def exists(self, session_path: str) -> bool:
        ...

    @abc.abstractmethod
    def list(self, session_path: str) -> list[str]:
        """Return immediate child names below *session_path*."""
        ...


class MemoryStorage(StorageAdapter):
    """Process-lifetime storage used when persistence is disabled."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._data: dict[str, str] = {}

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def session_path(self) -> str:
        return IN_MEMORY_PATH

    def init_session(self) -> None:
        pass

    def write(self, session_path: str, data: str) -> None:
        self._data[_normalize(session_path)] = data

    def read(self, session_path: str) -> str | None:
        return self._data.get(_normalize(session_path))

    def exists(self, session_path: str) -> bool:
        return _normalize(session_path) in self._data

    def list(self, session_path: str) -> list[str]:
        prefix = _normalize(session_path)
        prefix = f"{prefix}/" if prefix else ""
        results: list[str] = []
        for key in self._data:
            if not key.startswith(prefix):
                continue
            entry = key[len(prefix):].split("/", 1)[0]
            if entry and entry not in results:
                results.append(entry)
        return results


class FileStorage(StorageAdapter):
    """Storage rooted at ``<base_dir>/sessions/<session_id>/``."""

    def __init__(self, base_dir: str | Path, session_id: str) -> None:
        self._session_id = session_id
        self._base = Path(base_dir) / "sessions" / session_id

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def session_path(self) -> str:
        return str(self._base)

    def _resolve(self, session_path: str) -> Path:
        return self._base / _normalize(session_path)

    def init_session(self) -> None:
        try:
            self._base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create session directory {self._base}: {e}") from e

    def write(self, session_path: str, data: str) -> None:
        target = self._resolve(session_path)
        temp: Path | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Same directory as the target so the rename never crosses filesystems.
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=target.parent,
                prefix=_TEMP_PREFIX,
                suffix=_TEMP_SUFFIX,
                delete=False,
            ) as fh:
                temp = Path(fh.name)
                fh.write(data)
            temp.replace(target)
            temp = None
        except OSError as e:
            raise StorageError(f"Failed to write {target}: {e}") from e
        finally:
            if temp is not None:
                temp.unlink(missing_ok=True)

    def read(self, session_path: str) -> str | None:
        target = self._resolve(session_path)
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {target}: {e}") from e

    def exists(self, session_path: str) -> bool:
        return self._resolve(session_path).exists()

    def list(self, session_path: str) -> list[str]:
        target = self._resolve(session_path)
        try:
            return [
                p.name for p in target.iterdir()
                if not (p.name.startswith(_TEMP_PREFIX) and p.name.endswith(_TEMP_SUFFIX))
            ]
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as e:
            raise StorageError(f"Failed to list {target}: {e}") from e


def create_storage(
    persist: bool,
    session_dir: str | Path | None,
    input_file: str | Path,
    resume_session_id: str | None = None,
) -> StorageAdapter:
    """Pick the storage backend for a run."""
    session_id = resume_session_id or generate_session_id(input_file)
    if not persist:
        return MemoryStorage(session_id)
    if not session_dir:
        raise StorageError("A session directory is required when persistence is enabled")
    logger.debug("Using file storage at %s for session %s", session_dir, session_id)
    return FileStorage(session_dir, session_id)
