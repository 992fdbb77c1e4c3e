# crm_sync/webhooks/ledger.py
"""
Webhook dedup ledger.

One row per external event id. A delivery whose row already carries
processed_at is a duplicate; so is one whose PENDING row is still fresh
(another request is handling it). ERROR rows and stale PENDING rows are
taken over by the next delivery so the sender's retry actually retries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_sync.db import utcnow
from crm_sync.errors import NotFound, StorageUnavailable
from crm_sync.models.jobs import ERROR, OK, PENDING, SKIPPED, WebhookEvent

logger = logging.getLogger("uvicorn.error")

TERMINAL_STATUSES = {OK, SKIPPED, ERROR}


@dataclass
class LedgerRecord:
    is_new: bool
    ref: int
    status: str


class EventLedger:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        pending_timeout_sec: float = 300.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self._sessions = sessions
        self.pending_timeout = timedelta(seconds=pending_timeout_sec)
        self._now = clock or utcnow

    async def record_if_new(
        self,
        external_id: str,
        *,
        source: str,
        topic: Optional[str] = None,
        shop: Optional[str] = None,
        payload: bytes | str | None = None,
    ) -> LedgerRecord:
        raw = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else payload
        now = self._now()
        try:
            async with self._sessions() as session:
                event = WebhookEvent(
                    external_id=external_id,
                    source=source,
                    topic=topic,
                    shop=shop,
                    raw_payload=raw,
                    status=PENDING,
                    deliveries=1,
                    received_at=now,
                    updated_at=now,
                )
                session.add(event)
                await session.commit()
                logger.info("[LEDGER] new event %s topic=%s", external_id, topic)
                return LedgerRecord(True, event.id, PENDING)
        except IntegrityError:
            pass
        except DBAPIError as e:
            raise StorageUnavailable(f"ledger unavailable: {e}") from e

        try:
            return await self._on_redelivery(external_id, now)
        except DBAPIError as e:
            raise StorageUnavailable(f"ledger unavailable: {e}") from e

    async def _on_redelivery(self, external_id: str, now: datetime) -> LedgerRecord:
        async with self._sessions() as session:
            event = (
                await session.execute(select(WebhookEvent).where(WebhookEvent.external_id == external_id))
            ).scalar_one()
            ref, status, seen_at = event.id, event.status, event.updated_at

            in_flight = status == PENDING and seen_at > now - self.pending_timeout
            if event.processed_at is not None or in_flight:
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == ref)
                    .values(deliveries=WebhookEvent.deliveries + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                logger.info("[LEDGER] duplicate delivery %s (status=%s)", external_id, status)
                return LedgerRecord(False, ref, status)

            # ERROR or abandoned PENDING: whoever moves updated_at first owns the retry
            res = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == ref,
                    WebhookEvent.updated_at == seen_at,
                    WebhookEvent.processed_at.is_(None),
                )
                .values(
                    status=PENDING,
                    error=None,
                    updated_at=now,
                    deliveries=WebhookEvent.deliveries + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if res.rowcount == 1:
            logger.info("[LEDGER] retrying event %s (was %s)", external_id, status)
            return LedgerRecord(True, ref, PENDING)
        return LedgerRecord(False, ref, status)

    async def mark_processed(
        self,
        ref: int,
        status: str,
        *,
        derived_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """OK / SKIPPED close the event; ERROR leaves it open for the sender's retry."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal ledger status: {status}")
        now = self._now()
        values: Dict[str, Any] = {"status": status, "updated_at": now, "error": error}
        if derived_id is not None:
            values["derived_id"] = derived_id
        if status != ERROR:
            values["processed_at"] = now
        try:
            async with self._sessions() as session:
                res = await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == ref)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except DBAPIError as e:
            raise StorageUnavailable(f"ledger unavailable: {e}") from e
        if res.rowcount != 1:
            raise NotFound(f"webhook event {ref} not found")

    async def get(self, external_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as session:
            event = (
                await session.execute(select(WebhookEvent).where(WebhookEvent.external_id == external_id))
            ).scalar_one_or_none()
            return event.to_dict() if event else None

    async def list_events(self, *, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        stmt = select(WebhookEvent)
        if status:
            stmt = stmt.where(WebhookEvent.status == status)
        stmt = stmt.order_by(WebhookEvent.id.desc()).limit(limit)
        async with self._sessions() as session:
            return [e.to_dict() for e in (await session.execute(stmt)).scalars().all()]
