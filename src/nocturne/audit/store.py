"""JSONL audit trail writer and reader."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from nocturne.audit.schemas import AuditEvent
from nocturne.audit.schemas import AuditEventType
from nocturne.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Appends audit events to a JSONL file, one event per line.

    Disk access happens in worker threads; one lock orders writes and
    reads so a reader never sees a half-written line.
    """

    def __init__(self, config: AuditConfig) -> None:
        self.config = config
        self._path = Path(config.file_path)
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        async with self._lock:
            await asyncio.to_thread(self._write_line, event.model_dump_json())

    async def record(
        self,
        event_type: AuditEventType,
        *,
        room_id: str | None = None,
        **payload: object,
    ) -> None:
        """Shorthand for ``log(AuditEvent(...))`` with a keyword payload."""
        await self.log(AuditEvent(event_type=event_type, room_id=room_id, payload=payload))

    def _write_line(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)
            fh.write("\n")

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        room_id: str | None = None,
        since: float | None = None,
    ) -> list[AuditEvent]:
        """Return logged events in write order, filtered by type, room and time.

        Lines that do not parse are skipped with a warning.
        """
        if not self._path.exists():
            return []
        async with self._lock:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")

        events = []
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                event = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning("skipping malformed audit line %d in %s", number, self._path)
                continue
            if _matches(event, event_type, room_id, since):
                events.append(event)
        return events


def _matches(
    event: AuditEvent,
    event_type: AuditEventType | None,
    room_id: str | None,
    since: float | None,
) -> bool:
    if event_type is not None and event.event_type is not event_type:
        return False
    if room_id is not None and event.room_id != room_id:
        return False
    return since is None or event.timestamp >= since
