from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from phasegate.errors import (
    ArchivedTaskImmutableError,
    TaskNotFoundError,
    WorkflowStateError,
)
from phasegate.models import EscalationEvent, Task

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class TaskStateStore:
    """Durable per-task records stored as JSON envelopes.

    Live tasks live in ``tasks/<id>.json``; archived tasks move to
    ``archive/<id>.json`` and are write-once from then on. Every write replaces
    the whole file atomically. Writers of the same id are serialised by a
    thread lock plus a lock file; distinct ids never share a lock.
    """

    SCHEMA_VERSION = 1
    EVENT_LIMIT = 200

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir.resolve()
        self.tasks_dir = self.state_dir / "tasks"
        self.archive_dir = self.state_dir / "archive"
        self.events_dir = self.state_dir / "events"
        self.locks_dir = self.state_dir / "locks"
        for directory in (self.tasks_dir, self.archive_dir, self.events_dir, self.locks_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_id(task_id: str) -> None:
        if not TASK_ID_PATTERN.match(task_id):
            raise WorkflowStateError(f"Invalid task id: {task_id!r}", task_id=task_id)

    def _thread_lock(self, task_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[task_id] = lock
            return lock

    def _file_lock(self, task_id: str) -> AbstractContextManager[None]:
        return self._lock_file(self.locks_dir / f"{task_id}.lock", task_id)

    @contextmanager
    def _lock_file(self, lock_path: Path, task_id: str) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise WorkflowStateError(
                        f"Timed out waiting for state lock of task {task_id}.",
                        task_id=task_id,
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass

    @contextmanager
    def _task_lock(self, task_id: str) -> Iterator[None]:
        self._validate_id(task_id)
        with self._thread_lock(task_id):
            with self._file_lock(task_id):
                yield

    def _record_path(self, task_id: str, *, archived: bool) -> Path:
        directory = self.archive_dir if archived else self.tasks_dir
        return directory / f"{task_id}.json"

    def _read_record(self, task_id: str, *, archived: bool) -> Any:
        path = self._record_path(task_id, archived=archived)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise WorkflowStateError(
                f"Corrupt state record for task {task_id}: {exc}", task_id=task_id
            ) from exc

    def _write_record(self, task_id: str, envelope: dict[str, Any], *, archived: bool) -> None:
        path = self._record_path(task_id, archived=archived)
        self._replace_file(path, json.dumps(envelope, ensure_ascii=False, indent=2), task_id)

    @staticmethod
    def _replace_file(path: Path, serialized: str, task_id: str) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{task_id}-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def _delete_record(self, task_id: str) -> None:
        try:
            self._record_path(task_id, archived=False).unlink()
        except FileNotFoundError:
            pass

    def _record_ids(self) -> list[str]:
        ids = {path.stem for path in self.tasks_dir.glob("*.json")}
        ids.update(path.stem for path in self.archive_dir.glob("*.json"))
        return sorted(ids)

    def _append_event_line(self, task_id: str, event: dict[str, Any]) -> None:
        path = self.events_dir / f"{task_id}.jsonl"
        line = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
        lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
        if len(lines) < self.EVENT_LIMIT:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            return
        kept = lines[-(self.EVENT_LIMIT - 1) :] + [line]
        self._replace_file(path, "\n".join(kept) + "\n", task_id)

    def _read_event_lines(self, task_id: str) -> list[dict[str, Any]]:
        path = self.events_dir / f"{task_id}.jsonl"
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable event line for task %s", task_id)
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events

    def _normalize_envelope(self, raw_payload: Any, *, archived: bool) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "archived": bool(raw_payload.get("archived", archived)),
                "data": raw_payload.get("data"),
            }
        # Bare task dicts written by hand are accepted as revision 1.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "archived": archived,
            "data": raw_payload,
        }

    def get_envelope(self, task_id: str) -> dict[str, Any]:
        self._validate_id(task_id)
        raw = self._read_record(task_id, archived=True)
        if raw is not None:
            return self._normalize_envelope(raw, archived=True)
        raw = self._read_record(task_id, archived=False)
        if raw is not None:
            return self._normalize_envelope(raw, archived=False)
        raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)

    def exists(self, task_id: str) -> bool:
        try:
            self.get_envelope(task_id)
        except TaskNotFoundError:
            return False
        return True

    def is_archived(self, task_id: str) -> bool:
        self._validate_id(task_id)
        return self._read_record(task_id, archived=True) is not None

    def list_ids(self) -> list[str]:
        return self._record_ids()

    def load(self, task_id: str) -> Task:
        envelope = self.get_envelope(task_id)
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise WorkflowStateError(f"Task record {task_id} has no data.", task_id=task_id)
        return Task.from_dict(data)

    def _current_live(self, task_id: str) -> dict[str, Any] | None:
        if self._read_record(task_id, archived=True) is not None:
            raise ArchivedTaskImmutableError(
                f"Task {task_id} is archived and can no longer be written.", task_id=task_id
            )
        raw = self._read_record(task_id, archived=False)
        if raw is None:
            return None
        return self._normalize_envelope(raw, archived=False)

    def _envelope_for(
        self, data: dict[str, Any], revision: int, *, archived: bool
    ) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": self._utcnow_iso(),
            "archived": archived,
            "data": data,
        }

    def save(self, task: Task) -> None:
        with self._task_lock(task.id):
            current = self._current_live(task.id)
            payload = task.to_dict()
            revision = 1
            if current is not None:
                revision = int(current.get("revision", 1)) + 1
                stored = current.get("data") if isinstance(current.get("data"), dict) else {}
                stored_log = list(stored.get("escalation_log") or [])
                new_log = payload["escalation_log"]
                if new_log[: len(stored_log)] != stored_log:
                    raise WorkflowStateError(
                        f"Refusing to rewrite escalation history of task {task.id}.",
                        task_id=task.id,
                    )
            self._write_record(
                task.id, self._envelope_for(payload, revision, archived=False), archived=False
            )

    def append_escalation(self, task_id: str, event: EscalationEvent) -> None:
        with self._task_lock(task_id):
            current = self._current_live(task_id)
            if current is None or not isinstance(current.get("data"), dict):
                raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)
            data = dict(current["data"])
            log = list(data.get("escalation_log") or [])
            log.append(event.to_dict())
            data["escalation_log"] = log
            revision = int(current.get("revision", 1)) + 1
            self._write_record(
                task_id, self._envelope_for(data, revision, archived=False), archived=False
            )

    def archive(self, task: Task) -> None:
        if not task.is_terminal:
            raise WorkflowStateError(
                f"Only completed or failed tasks can be archived (task {task.id} is "
                f"{task.status.value}).",
                task_id=task.id,
            )
        with self._task_lock(task.id):
            current = self._current_live(task.id)
            revision = 1 if current is None else int(current.get("revision", 1)) + 1
            task.archived = True
            self._write_record(
                task.id,
                self._envelope_for(task.to_dict(), revision, archived=True),
                archived=True,
            )
            self._delete_record(task.id)
        with self._locks_guard:
            self._locks.pop(task.id, None)
        logger.info("Archived task %s with status %s", task.id, task.status.value)

    def record_event(self, task_id: str, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", self._utcnow_iso())
        with self._task_lock(task_id):
            self._append_event_line(task_id, payload)

    def events(self, task_id: str) -> list[dict[str, Any]]:
        self._validate_id(task_id)
        return self._read_event_lines(task_id)[-self.EVENT_LIMIT :]


class MemoryTaskStateStore(TaskStateStore):
    """Same contract as :class:`TaskStateStore`, kept in process memory."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, bool], dict[str, Any]] = {}
        self._events: dict[str, list[dict[str, Any]]] = {}
        self._locks = {}
        self._locks_guard = threading.Lock()

    def _file_lock(self, task_id: str) -> AbstractContextManager[None]:
        return nullcontext()

    def _read_record(self, task_id: str, *, archived: bool) -> Any:
        record = self._records.get((task_id, archived))
        return json.loads(json.dumps(record)) if record is not None else None

    def _write_record(self, task_id: str, envelope: dict[str, Any], *, archived: bool) -> None:
        self._records[(task_id, archived)] = json.loads(json.dumps(envelope))

    def _delete_record(self, task_id: str) -> None:
        self._records.pop((task_id, False), None)

    def _record_ids(self) -> list[str]:
        return sorted({task_id for task_id, _archived in self._records})

    def _append_event_line(self, task_id: str, event: dict[str, Any]) -> None:
        events = self._events.setdefault(task_id, [])
        events.append(json.loads(json.dumps(event)))
        del events[: -self.EVENT_LIMIT]

    def _read_event_lines(self, task_id: str) -> list[dict[str, Any]]:
        return list(self._events.get(task_id, []))
