from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any

from conductor.notifications import ChangeNotification, to_jsonable, utc_now_iso

logger = logging.getLogger(__name__)


class AuditTrail:
    """Append-only JSON-lines record of one task's run.

    Lives next to the task's checkpoints::

        tasks/<task_id>/audit.jsonl           one event per line
        tasks/<task_id>/audit-summary.json    written when a run ends

    The trail is a ``NotificationSink``: subscribed to the notification bus it
    records every transition and the name of every changed context field. The
    orchestrator adds one event per agent call and per interpreted verdict.
    """

    EVENTS_FILE = "audit.jsonl"
    SUMMARY_FILE = "audit-summary.json"

    def __init__(self, directory: Path, task_id: str) -> None:
        self.directory = directory
        self.task_id = task_id

    @property
    def events_path(self) -> Path:
        return self.directory / self.EVENTS_FILE

    @property
    def summary_path(self) -> Path:
        return self.directory / self.SUMMARY_FILE

    def _append(self, kind: str, **fields: Any) -> None:
        record = {"at": utc_now_iso(), "task_id": self.task_id, "kind": kind, **fields}
        self.directory.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(to_jsonable(record), ensure_ascii=False, sort_keys=True))
            handle.write("\n")

    def __call__(self, notification: ChangeNotification) -> None:
        if notification.task_id != self.task_id:
            return
        if notification.kind == "transition":
            self._append(
                "transition",
                scope=notification.scope,
                event=notification.event,
                from_state=notification.from_state,
                to_state=notification.to_state,
            )
        else:
            self._append("field", scope=notification.scope, field=notification.field)

    def record_agent_call(
        self,
        role: str,
        *,
        cost_usd: float,
        duration_seconds: float,
        token_usage: dict[str, int] | None = None,
        session_id: str | None = None,
    ) -> None:
        self._append(
            "agent_call",
            role=role,
            cost_usd=cost_usd,
            duration_seconds=duration_seconds,
            token_usage=dict(token_usage or {}),
            session_id=session_id,
        )

    def record_verdict(self, role: str, verdict: Any) -> None:
        self._append("verdict", role=role, verdict=verdict)

    def events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        records: list[dict[str, Any]] = []
        with self.events_path.open(encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping unreadable audit line in %s", self.events_path)
        return records

    def summary(self) -> dict[str, Any]:
        events = self.events()
        calls = [event for event in events if event["kind"] == "agent_call"]
        return {
            "task_id": self.task_id,
            "events": len(events),
            "transitions": sum(1 for event in events if event["kind"] == "transition"),
            "agent_calls": dict(sorted(Counter(call["role"] for call in calls).items())),
            "verdicts": [
                f"{event['role']}:{event['verdict']}"
                for event in events
                if event["kind"] == "verdict"
            ],
            "cost_usd": round(sum(float(call["cost_usd"]) for call in calls), 6),
            "duration_seconds": round(
                sum(float(call["duration_seconds"]) for call in calls), 3
            ),
        }

    def complete(self, status: str, *, error: str | None = None) -> dict[str, Any]:
        """Record the end of a run and write the summary file."""
        self._append("run_ended", status=status, error=error)
        summary = {**self.summary(), "status": status, "error": error, "ended_at": utc_now_iso()}
        self.summary_path.write_text(
            json.dumps(summary, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        logger.info("Audit summary for %s written to %s", self.task_id, self.summary_path)
        return summary
