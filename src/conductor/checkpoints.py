"""Durable, versioned task snapshots.

Layout under the state directory::

    tasks/<task-id>/checkpoints/checkpoint-000001.json
    tasks/<task-id>/checkpoints/index.json

Checkpoint files are created once through a temp file and ``os.replace`` and
are never rewritten or deleted. ``index.json`` is a convenience listing that
gains one row per write and is replaced atomically; it is rebuilt from a scan
of the directory, the source of truth, only when missing or out of step.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from conductor.errors import CheckpointCorrupt
from conductor.task import TERMINAL_TASK_STATES, TaskState, TaskStateMachine

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
CHECKPOINT_PATTERN = re.compile(r"^checkpoint-(\d{6})\.json$")


class CheckpointTrigger(StrEnum):
    PHASE_TRANSITION = "phase_transition"
    CHUNK_APPROVED = "chunk_approved"
    HUMAN_DECISION = "human_decision"
    MANUAL = "manual"
    TERMINAL = "terminal"


@dataclass(slots=True)
class Checkpoint:
    task_id: str
    sequence: int
    trigger: CheckpointTrigger
    timestamp: str
    recoverable: bool
    task: dict[str, Any]
    execution: dict[str, Any] | None = None
    description: str = ""
    schema_version: int = SCHEMA_VERSION

    @property
    def task_state(self) -> str:
        return str(self.task.get("state", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "sequence": self.sequence,
            "trigger": self.trigger.value,
            "timestamp": self.timestamp,
            "description": self.description,
            "recoverable": self.recoverable,
            "task": self.task,
            "execution": self.execution,
        }


@dataclass(slots=True)
class CheckpointEntry:
    sequence: int
    path: Path
    trigger: str | None = None
    timestamp: str | None = None
    recoverable: bool = False
    task_state: str | None = None
    description: str = ""
    error: str | None = None

    @property
    def is_corrupt(self) -> bool:
        return self.error is not None


@dataclass(slots=True)
class RecoveryResult:
    checkpoint: Checkpoint | None
    problems: list[CheckpointEntry] = field(default_factory=list)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _atomic_write_text(path: Path, content: str) -> None:
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


def is_recoverable(machine: TaskStateMachine, trigger: CheckpointTrigger) -> bool:
    if trigger is CheckpointTrigger.TERMINAL or machine.state in TERMINAL_TASK_STATES:
        return False
    return machine.context.in_flight is None


def parse_checkpoint(path: Path) -> Checkpoint:
    """Read one checkpoint file; raise CheckpointCorrupt if it cannot be used."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CheckpointCorrupt(path, f"unreadable: {exc}") from exc
    if not isinstance(payload, dict):
        raise CheckpointCorrupt(path, "not a JSON object")

    version = payload.get("schema_version")
    if not isinstance(version, int):
        raise CheckpointCorrupt(path, "missing schema_version")
    if version > SCHEMA_VERSION:
        raise CheckpointCorrupt(path, f"schema_version {version} is newer than {SCHEMA_VERSION}")
    if version != SCHEMA_VERSION:
        raise CheckpointCorrupt(path, f"unsupported schema_version {version}")

    try:
        checkpoint = Checkpoint(
            task_id=str(payload["task_id"]),
            sequence=int(payload["sequence"]),
            trigger=CheckpointTrigger(payload["trigger"]),
            timestamp=str(payload["timestamp"]),
            recoverable=bool(payload["recoverable"]),
            task=payload["task"],
            execution=payload.get("execution"),
            description=str(payload.get("description") or ""),
            schema_version=version,
        )
        restore_task_state_machine(checkpoint)
    except (KeyError, TypeError, ValueError) as exc:
        raise CheckpointCorrupt(path, f"malformed snapshot: {exc}") from exc
    return checkpoint


def restore_task_state_machine(checkpoint: Checkpoint) -> TaskStateMachine:
    snapshot = dict(checkpoint.task)
    snapshot["execution"] = checkpoint.execution
    return TaskStateMachine.from_snapshot(snapshot)


class CheckpointStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    def task_dir(self, task_id: str) -> Path:
        return self.root / "tasks" / task_id / "checkpoints"

    def list_tasks(self) -> list[str]:
        tasks_dir = self.root / "tasks"
        if not tasks_dir.is_dir():
            return []
        return sorted(item.name for item in tasks_dir.iterdir() if item.is_dir())

    def _sequences(self, task_id: str) -> list[tuple[int, Path]]:
        directory = self.task_dir(task_id)
        if not directory.is_dir():
            return []
        found: list[tuple[int, Path]] = []
        for item in directory.iterdir():
            match = CHECKPOINT_PATTERN.match(item.name)
            if match:
                found.append((int(match.group(1)), item))
        return sorted(found)

    def create_checkpoint(
        self,
        machine: TaskStateMachine,
        trigger: CheckpointTrigger,
        description: str = "",
    ) -> Checkpoint:
        task_id = machine.context.task_id
        existing = self._sequences(task_id)
        sequence = existing[-1][0] + 1 if existing else 1
        path = self.task_dir(task_id) / f"checkpoint-{sequence:06d}.json"
        if path.exists():
            raise FileExistsError(f"Checkpoint already exists: {path}")

        snapshot = machine.snapshot()
        execution = snapshot.pop("execution")
        checkpoint = Checkpoint(
            task_id=task_id,
            sequence=sequence,
            trigger=trigger,
            timestamp=_utcnow_iso(),
            recoverable=is_recoverable(machine, trigger),
            task=snapshot,
            execution=execution,
            description=description,
        )
        _atomic_write_text(path, json.dumps(checkpoint.to_dict(), ensure_ascii=False, indent=2))
        self._write_index(
            task_id,
            CheckpointEntry(
                sequence=sequence,
                path=path,
                trigger=trigger.value,
                timestamp=checkpoint.timestamp,
                recoverable=checkpoint.recoverable,
                task_state=checkpoint.task_state,
                description=description,
            ),
        )
        logger.debug(
            "Checkpoint %s #%d (%s, recoverable=%s)",
            task_id,
            sequence,
            trigger,
            checkpoint.recoverable,
        )
        return checkpoint

    @staticmethod
    def _index_row(entry: CheckpointEntry) -> dict[str, Any]:
        return {
            "sequence": entry.sequence,
            "file": entry.path.name,
            "trigger": entry.trigger,
            "timestamp": entry.timestamp,
            "recoverable": entry.recoverable,
            "task_state": entry.task_state,
            "description": entry.description,
            "schema_version": SCHEMA_VERSION if not entry.is_corrupt else None,
            "error": entry.error,
        }

    def _read_index(self, task_id: str) -> list[dict[str, Any]] | None:
        """Rows of the current index, or None when it is missing or unusable."""
        path = self.task_dir(task_id) / "index.json"
        try:
            index = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(index, dict) or index.get("schema_version") != SCHEMA_VERSION:
            return None
        rows = index.get("checkpoints")
        if not isinstance(rows, list) or not all(
            isinstance(row, dict) and isinstance(row.get("sequence"), int) for row in rows
        ):
            return None
        return rows

    def _write_index(self, task_id: str, entry: CheckpointEntry) -> None:
        rows = self._read_index(task_id)
        previous = rows[-1]["sequence"] if rows else 0
        if rows is None or previous != entry.sequence - 1:
            logger.debug("Rebuilding checkpoint index for %s", task_id)
            rows = [self._index_row(item) for item in self.list_checkpoints(task_id)]
        else:
            rows.append(self._index_row(entry))
        index = {"schema_version": SCHEMA_VERSION, "task_id": task_id, "checkpoints": rows}
        _atomic_write_text(
            self.task_dir(task_id) / "index.json",
            json.dumps(index, ensure_ascii=False, indent=2),
        )

    def list_checkpoints(self, task_id: str) -> list[CheckpointEntry]:
        entries: list[CheckpointEntry] = []
        for sequence, path in self._sequences(task_id):
            try:
                checkpoint = parse_checkpoint(path)
            except CheckpointCorrupt as exc:
                entries.append(CheckpointEntry(sequence=sequence, path=path, error=exc.reason))
                continue
            entries.append(
                CheckpointEntry(
                    sequence=sequence,
                    path=path,
                    trigger=checkpoint.trigger.value,
                    timestamp=checkpoint.timestamp,
                    recoverable=checkpoint.recoverable,
                    task_state=checkpoint.task_state,
                    description=checkpoint.description,
                )
            )
        return entries

    def load_checkpoint(self, task_id: str, sequence: int) -> Checkpoint:
        path = self.task_dir(task_id) / f"checkpoint-{sequence:06d}.json"
        if not path.exists():
            raise FileNotFoundError(f"No checkpoint #{sequence} for task {task_id}")
        return parse_checkpoint(path)

    def load_latest_recoverable(self, task_id: str) -> RecoveryResult:
        problems: list[CheckpointEntry] = []
        for sequence, path in reversed(self._sequences(task_id)):
            try:
                checkpoint = parse_checkpoint(path)
            except CheckpointCorrupt as exc:
                logger.warning("Skipping unusable checkpoint %s: %s", path, exc.reason)
                problems.append(CheckpointEntry(sequence=sequence, path=path, error=exc.reason))
                continue
            if checkpoint.recoverable and TaskState(checkpoint.task_state) not in (
                TERMINAL_TASK_STATES
            ):
                return RecoveryResult(checkpoint=checkpoint, problems=problems)
        return RecoveryResult(checkpoint=None, problems=problems)
