"""Durable storage behind a narrow key-value port.

The council never treats storage as authoritative. Every record carries a
schema version and is validated on load; anything that fails validation is
removed and reported as absent. Write failures are logged and reported as
``False`` while in-memory state stays correct.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol, Sequence

from pydantic import ValidationError

from .canonical import fingerprint, to_canonical_json
from .models import (
    CARRYOVER_MAX_EXCHANGES,
    BrainState,
    Carryover,
    DecisionRecord,
    Exchange,
    KeyNotes,
    ProjectMemory,
    ProjectState,
    ProjectStatus,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def save(self, key: str, value: str) -> bool:
        ...

    def load(self, key: str) -> str | None:
        ...

    def remove(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    def load(self, key: str) -> str | None:
        return self._data.get(key)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


# ---------------------------------------------------------------------------
# File-backed store
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar so *path* itself can be replaced atomically."""
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, fsync, then ``os.replace`` into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class FileKeyValueStore:
    """One JSON file per key under ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, key: str) -> Path:
        safe = _UNSAFE_KEY_CHARS.sub("_", key).strip("._")
        if not safe:
            raise ValueError(f"Storage key has no usable characters: {key!r}")
        return self.root / f"{safe}.json"

    def save(self, key: str, value: str) -> bool:
        path = self.path_for(key)
        try:
            with _locked_file(path):
                _atomic_write_text(path, value)
        except OSError as exc:
            logger.error("store_save_failed key=%s path=%s error=%s", key, path, exc)
            return False
        return True

    def load(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            with _locked_file(path):
                return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("store_load_failed key=%s path=%s error=%s", key, path, exc)
            return None

    def remove(self, key: str) -> None:
        path = self.path_for(key)
        try:
            with _locked_file(path):
                path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("store_remove_failed key=%s path=%s error=%s", key, path, exc)


# ---------------------------------------------------------------------------
# Carryover
# ---------------------------------------------------------------------------

CARRYOVER_KEY = "council-carryover"


def build_carryover(state: BrainState) -> Carryover | None:
    """Snapshot the newest exchanges and key-notes for the next mode, or None if there is nothing to carry."""
    if not state.exchanges and state.key_notes is None:
        return None
    session_id = state.discussion_session.id if state.discussion_session is not None else new_id("session")
    return Carryover(
        from_session_id=session_id,
        created_at=utc_now(),
        key_notes=state.key_notes,
        last_exchanges=state.exchanges[-CARRYOVER_MAX_EXCHANGES:],
    )


def format_carryover_context(carryover: Carryover) -> str:
    lines = ["--- Carried Over From Discussion ---"]
    notes = carryover.key_notes
    if notes is not None:
        for label, items in (
            ("Decisions", notes.decisions),
            ("Agreements", notes.agreements),
            ("Constraints", notes.constraints),
            ("Open questions", notes.open_questions),
        ):
            if items:
                lines.append(f"{label}: {'; '.join(items)}")
    for exchange in carryover.last_exchanges:
        lines.append(f"User: {exchange.user_prompt}")
        for agent, response in exchange.responses_by_agent.items():
            if response.content:
                lines.append(f"{agent.value.upper()}: {response.content}")
    return "\n".join(lines)


class CarryoverStore:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def save(self, carryover: Carryover) -> bool:
        return self.store.save(CARRYOVER_KEY, to_canonical_json(carryover))

    def load(self) -> Carryover | None:
        raw = self.store.load(CARRYOVER_KEY)
        if raw is None:
            return None
        try:
            return Carryover.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("carryover_discarded errors=%d", exc.error_count())
            self.store.remove(CARRYOVER_KEY)
            return None

    def clear(self) -> None:
        self.store.remove(CARRYOVER_KEY)

    def exists(self) -> bool:
        return self.load() is not None


# ---------------------------------------------------------------------------
# Project ledger
# ---------------------------------------------------------------------------

PROJECT_KEY_PREFIX = "council_project_"
ACTIVE_PROJECT_KEY = "council_active_project"
PROJECT_INDEX_KEY = "council_project_index"


def seal_decision(record: DecisionRecord) -> DecisionRecord:
    """Stamp a decision record with the fingerprint of its content."""
    digest = fingerprint(record.model_dump(mode="json", exclude={"fingerprint"}))
    return record.model_copy(update={"fingerprint": digest})


class ProjectStore:
    """Project states and their append-only decision ledgers."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    @staticmethod
    def _key(project_id: str) -> str:
        return f"{PROJECT_KEY_PREFIX}{project_id}"

    def _index(self) -> list[str]:
        raw = self.store.load(PROJECT_INDEX_KEY)
        if raw is None:
            return []
        try:
            ids = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("project_index_discarded reason=malformed")
            return []
        if not isinstance(ids, list) or not all(isinstance(item, str) for item in ids):
            logger.warning("project_index_discarded reason=shape")
            return []
        return ids

    def _write_index(self, ids: Sequence[str]) -> bool:
        return self.store.save(PROJECT_INDEX_KEY, json.dumps(sorted(set(ids))))

    def create(self, title: str | None = None) -> ProjectState:
        now = utc_now()
        project = ProjectState(id=new_id("proj"), created_at=now, updated_at=now, title=title)
        self.save(project)
        return project

    def save(self, project: ProjectState) -> bool:
        updated = project.model_copy(update={"updated_at": utc_now()})
        if not self.store.save(self._key(project.id), to_canonical_json(updated)):
            return False
        ids = self._index()
        if project.id not in ids:
            return self._write_index([*ids, project.id])
        return True

    def load(self, project_id: str) -> ProjectState | None:
        raw = self.store.load(self._key(project_id))
        if raw is None:
            return None
        try:
            return ProjectState.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("project_discarded project_id=%s errors=%d", project_id, exc.error_count())
            self.clear(project_id)
            return None

    def clear(self, project_id: str) -> None:
        self.store.remove(self._key(project_id))
        ids = self._index()
        if project_id in ids:
            self._write_index([item for item in ids if item != project_id])
        if self.active_project_id() == project_id:
            self.clear_active()

    def list_projects(self) -> list[ProjectState]:
        """All loadable projects, most recently updated first."""
        projects = [project for project in (self.load(pid) for pid in self._index()) if project is not None]
        return sorted(projects, key=lambda project: project.updated_at, reverse=True)

    # -- active project pointer --

    def set_active(self, project_id: str) -> bool:
        return self.store.save(ACTIVE_PROJECT_KEY, project_id)

    def active_project_id(self) -> str | None:
        raw = self.store.load(ACTIVE_PROJECT_KEY)
        return raw.strip() if raw and raw.strip() else None

    def load_active(self) -> ProjectState | None:
        project_id = self.active_project_id()
        return self.load(project_id) if project_id else None

    def clear_active(self) -> None:
        self.store.remove(ACTIVE_PROJECT_KEY)

    # -- ledger updates --

    def append_decision(self, project: ProjectState, decision: DecisionRecord) -> ProjectState:
        """Append a decision; a blocked decision marks the project blocked, anything else active."""
        sealed = decision if decision.fingerprint else seal_decision(decision)
        updated = project.model_copy(
            update={
                "updated_at": utc_now(),
                "decisions": (*project.decisions, sealed),
                "last_decision_id": sealed.id,
                "status": ProjectStatus.BLOCKED if sealed.blocked else ProjectStatus.ACTIVE,
            }
        )
        self.save(updated)
        return updated

    def update_memory(
        self, project: ProjectState, exchanges: Sequence[Exchange], key_notes: KeyNotes | None
    ) -> ProjectState:
        memory = ProjectMemory(
            recent_exchanges=tuple(exchanges)[-CARRYOVER_MAX_EXCHANGES:],
            key_notes=key_notes,
        )
        updated = project.model_copy(update={"updated_at": utc_now(), "project_memory": memory})
        self.save(updated)
        return updated

    def update_status(self, project: ProjectState, status: ProjectStatus) -> ProjectState:
        updated = project.model_copy(update={"updated_at": utc_now(), "status": status})
        self.save(updated)
        return updated

    def update_title(self, project: ProjectState, title: str) -> ProjectState:
        updated = project.model_copy(update={"updated_at": utc_now(), "title": title})
        self.save(updated)
        return updated
