from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

NotificationSink = Callable[["ChangeNotification"], None]


def utc_now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def to_jsonable(value: Any) -> Any:
    """Convert context values (enums, tuples, objects with ``to_dict``) to plain JSON data."""
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return to_jsonable(value.to_dict())
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [to_jsonable(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class ChangeNotification:
    scope: str
    kind: str
    task_id: str
    field: str | None = None
    value: Any = None
    from_state: str | None = None
    to_state: str | None = None
    event: str | None = None
    at: str = dataclasses.field(default_factory=utc_now_iso)

    @classmethod
    def field_changed(cls, scope: str, task_id: str, name: str, value: Any) -> ChangeNotification:
        return cls(scope=scope, kind="field", task_id=task_id, field=name, value=to_jsonable(value))

    @classmethod
    def transitioned(
        cls,
        scope: str,
        task_id: str,
        from_state: str,
        to_state: str,
        event: str,
    ) -> ChangeNotification:
        return cls(
            scope=scope,
            kind="transition",
            task_id=task_id,
            from_state=from_state,
            to_state=to_state,
            event=event,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "kind": self.kind,
            "task_id": self.task_id,
            "field": self.field,
            "value": self.value,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "event": self.event,
            "at": self.at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)


class NotificationBus:
    """Publish/subscribe fan-out for change notifications.

    The bus is itself a ``NotificationSink``, so machines only ever see a callable.
    """

    def __init__(self) -> None:
        self._subscribers: list[NotificationSink] = []

    def subscribe(self, callback: NotificationSink) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, notification: ChangeNotification) -> None:
        for subscriber in list(self._subscribers):
            subscriber(notification)

    def __call__(self, notification: ChangeNotification) -> None:
        self.publish(notification)
