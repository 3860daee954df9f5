from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(frozen=True, slots=True)
class ExecutionEvent:
    """Something that happened during an execution.

    Events drive status updates on the execution record and are persisted as the
    execution log. Kinds: `execution_started`, `execution_finished`, `step_started`,
    `step_retrying`, `step_succeeded`, `step_failed`, `step_skipped`,
    `step_cancelled`, `log`.
    """

    kind: str
    message: str
    step: str | None = None
    level: str = "info"
    data: dict[str, object] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_iso_now)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "timestamp": self.timestamp,
            "kind": self.kind,
            "level": self.level,
            "message": self.message,
        }
        if self.step is not None:
            out["step"] = self.step
        if self.data:
            out["data"] = self.data
        return out


EventSink = Callable[[ExecutionEvent], None]


def discard_event(_event: ExecutionEvent) -> None:
    return None
