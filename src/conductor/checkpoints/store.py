from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.checkpoints.models import Checkpoint
from conductor.errors import CheckpointError, CheckpointSequenceError

logger = logging.getLogger(__name__)


class CheckpointStore:
    """File-backed checkpoint storage, one directory per task.

    Layout under ``root``::

        tasks/<task_id>/checkpoint.json          latest checkpoint
        tasks/<task_id>/history/checkpoint-NNNNNN.json
        tasks/<task_id>/meta.json                sequence bookkeeping and index
        tasks/<task_id>/validated                last validated sequence
        archive/<task_id>-<timestamp>/           finished tasks

    Every file is replaced atomically, so a crash mid-write leaves the previous
    version in place.
    """

    LATEST_FILE = "checkpoint.json"
    META_FILE = "meta.json"
    VALIDATED_FILE = "validated"
    LOCK_FILE = ".lock"

    def __init__(
        self,
        root: Path,
        *,
        max_history: int = 10,
        lock_timeout_seconds: float = 3.0,
        stale_lock_seconds: float = 60.0,
    ) -> None:
        self.root = root
        self.max_history = max_history
        self.lock_timeout_seconds = lock_timeout_seconds
        self.stale_lock_seconds = stale_lock_seconds

    def task_dir(self, task_id: str) -> Path:
        return self.root / "tasks" / task_id

    def latest_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / self.LATEST_FILE

    def history_path(self, task_id: str, sequence: int) -> Path:
        return self.task_dir(task_id) / "history" / f"checkpoint-{sequence:06d}.json"

    def _lock_is_stale(self, lock_file: Path) -> bool:
        """A lock is stale once its owner process is gone or it outlived ``stale_lock_seconds``."""
        try:
            owner = lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - lock_file.stat().st_mtime
        except FileNotFoundError:
            return False
        if age > self.stale_lock_seconds:
            return True
        if not owner.isdigit() or os.name != "posix":
            return False
        pid = int(owner)
        if pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except OSError:
            return False
        return False

    @contextmanager
    def _lock(self, task_id: str) -> Iterator[None]:
        lock_file = self.task_dir(task_id) / self.LOCK_FILE
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale(lock_file):
                    logger.warning("Breaking stale checkpoint lock %s", lock_file)
                    lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise CheckpointError(
                        f"Timed out waiting for checkpoint lock of task {task_id!r}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_path = Path(handle.name)
            try:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            except BaseException:
                handle.close()
                temp_path.unlink(missing_ok=True)
                raise
        try:
            os.replace(temp_path, path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            raise CheckpointError(f"Checkpoint file {path} is not valid JSON: {exc}") from exc

    def _empty_meta(self, task_id: str) -> dict[str, Any]:
        return {
            "task_id": task_id,
            "last_sequence": 0,
            "last_validated_sequence": 0,
            "checkpoints": [],
        }

    def _validated_floor(self, task_id: str) -> int:
        path = self.task_dir(task_id) / self.VALIDATED_FILE
        try:
            return int(path.read_text(encoding="utf-8").strip() or 0)
        except FileNotFoundError:
            return 0
        except ValueError:
            logger.warning("Ignoring unreadable validation marker %s", path)
            return 0

    def _rebuild_meta(self, task_id: str) -> dict[str, Any]:
        meta = self._empty_meta(task_id)
        meta["last_validated_sequence"] = self._validated_floor(task_id)
        history_dir = self.task_dir(task_id) / "history"
        for path in sorted(history_dir.glob("checkpoint-*.json")):
            try:
                checkpoint = Checkpoint.from_dict(self._read_json(path))
            except (CheckpointError, KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable checkpoint %s while rebuilding index", path)
                continue
            meta["checkpoints"].append(self._index_entry(checkpoint, path))
            meta["last_sequence"] = max(meta["last_sequence"], checkpoint.sequence)
        return meta

    def read_meta(self, task_id: str) -> dict[str, Any]:
        path = self.task_dir(task_id) / self.META_FILE
        try:
            meta = self._read_json(path)
        except CheckpointError:
            logger.warning("Checkpoint index for %s is corrupt; rebuilding from history", task_id)
            return self._rebuild_meta(task_id)
        if not isinstance(meta, dict):
            return self._rebuild_meta(task_id)
        return meta

    def _index_entry(self, checkpoint: Checkpoint, path: Path) -> dict[str, Any]:
        return {
            "sequence": checkpoint.sequence,
            "created_at": checkpoint.created_at,
            "trigger": checkpoint.trigger,
            "phase": checkpoint.phase,
            "file": path.name,
        }

    def last_sequence(self, task_id: str) -> int:
        return int(self.read_meta(task_id).get("last_sequence", 0))

    def last_validated_sequence(self, task_id: str) -> int:
        return int(self.read_meta(task_id).get("last_validated_sequence", 0))

    def write(self, checkpoint: Checkpoint) -> Path:
        task_id = checkpoint.task_id
        with self._lock(task_id):
            meta = self.read_meta(task_id)
            floor = max(
                int(meta.get("last_sequence", 0)),
                int(meta.get("last_validated_sequence", 0)),
            )
            if checkpoint.sequence <= floor:
                raise CheckpointSequenceError(task_id, checkpoint.sequence, floor)

            text = checkpoint.to_json()
            history_path = self.history_path(task_id, checkpoint.sequence)
            self._atomic_write(history_path, text)
            self._atomic_write(self.latest_path(task_id), text)

            entries = [
                entry
                for entry in meta.get("checkpoints", [])
                if entry.get("sequence") != checkpoint.sequence
            ]
            entries.append(self._index_entry(checkpoint, history_path))
            while self.max_history > 0 and len(entries) > self.max_history:
                dropped = entries.pop(0)
                (history_path.parent / str(dropped.get("file", ""))).unlink(missing_ok=True)
            meta["checkpoints"] = entries
            meta["last_sequence"] = checkpoint.sequence
            meta["updated_at"] = checkpoint.created_at
            self._atomic_write(
                self.task_dir(task_id) / self.META_FILE,
                json.dumps(meta, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
            )
        return history_path

    def read_latest(self, task_id: str) -> dict[str, Any] | None:
        return self._read_json(self.latest_path(task_id))

    def read_sequence(self, task_id: str, sequence: int) -> dict[str, Any] | None:
        return self._read_json(self.history_path(task_id, sequence))

    def list_history(self, task_id: str) -> list[dict[str, Any]]:
        return list(self.read_meta(task_id).get("checkpoints", []))

    def mark_validated(self, task_id: str, sequence: int) -> None:
        with self._lock(task_id):
            meta = self.read_meta(task_id)
            if sequence <= int(meta.get("last_validated_sequence", 0)):
                return
            meta["last_validated_sequence"] = sequence
            self._atomic_write(self.task_dir(task_id) / self.VALIDATED_FILE, f"{sequence}\n")
            meta["last_sequence"] = max(int(meta.get("last_sequence", 0)), sequence)
            self._atomic_write(
                self.task_dir(task_id) / self.META_FILE,
                json.dumps(meta, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
            )

    def list_tasks(self) -> list[str]:
        tasks_dir = self.root / "tasks"
        if not tasks_dir.exists():
            return []
        return sorted(path.name for path in tasks_dir.iterdir() if path.is_dir())

    def archive(self, task_id: str) -> Path | None:
        source = self.task_dir(task_id)
        if not source.exists():
            return None
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        target = self.root / "archive" / f"{task_id}-{timestamp}"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        logger.info("Archived checkpoints of %s to %s", task_id, target)
        return target
