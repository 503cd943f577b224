"""Communication log persistence: fan-out inserts, atomic claims, terminal transitions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from loguru import logger
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.core.db_retry import with_db_retry
from campaign_broker.models.communication_log import (
    OPEN_LOG_STATUSES,
    CommunicationLog,
    LogStatus,
)


@dataclass(slots=True)
class DeliveryOutcome:
    """Result of one delivery attempt, from the worker or a vendor receipt."""

    log_id: int
    campaign_id: int
    success: bool
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None
    delivered_at: datetime | None = None


@dataclass(slots=True)
class ClaimedLog:
    """Detached snapshot of a claimed log, safe to pass between tasks."""

    id: int
    campaign_id: int
    customer_id: int
    recipient: str
    message: str
    claim_token: str


def _merge_metadata(current: Mapping[str, Any] | None, extra: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(current or {})
    merged.update(extra)
    return merged


class DeliveryLogStore:
    """Owns every write to ``communication_logs``.

    A log moves PENDING -> PROCESSING (claim) -> SENT|FAILED exactly once.
    Every transition is a conditional UPDATE whose rowcount tells the caller
    whether it won, so concurrent ticks and late receipts never double count.
    """

    def __init__(self, session_factory: SessionFactory, settings: Settings | None = None):
        self._session_factory = session_factory
        self._settings = settings or default_settings

    async def insert_pending(
        self,
        session: AsyncSession,
        campaign_id: int,
        rows: Iterable[Mapping[str, Any]],
    ) -> int:
        """Insert PENDING logs inside the caller's transaction.

        ``rows`` carry ``customer_id``, ``recipient`` and the personalized
        ``message``. Returns the number of rows inserted.
        """

        now = utcnow()
        values = [
            {
                "campaign_id": campaign_id,
                "customer_id": row["customer_id"],
                "recipient": row["recipient"],
                "message": row["message"],
                "status": LogStatus.PENDING.value,
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]
        if not values:
            return 0
        await session.execute(insert(CommunicationLog), values)
        return len(values)

    async def claim_pending(self, limit: int) -> list[ClaimedLog]:
        """Claim up to ``limit`` PENDING logs, oldest first, for one tick.

        Rows already taken by a concurrent claimer drop out of the UPDATE's
        ``status = PENDING`` filter, so each log is owned by one token.
        """

        token = uuid.uuid4().hex

        async def _claim() -> list[ClaimedLog]:
            async with self._session_factory() as session:
                async with session.begin():
                    candidate_ids = (
                        await session.scalars(
                            select(CommunicationLog.id)
                            .where(CommunicationLog.status == LogStatus.PENDING.value)
                            .order_by(CommunicationLog.created_at, CommunicationLog.id)
                            .limit(limit)
                        )
                    ).all()
                    if not candidate_ids:
                        return []
                    now = utcnow()
                    await session.execute(
                        update(CommunicationLog)
                        .where(
                            CommunicationLog.id.in_(candidate_ids),
                            CommunicationLog.status == LogStatus.PENDING.value,
                        )
                        .values(
                            status=LogStatus.PROCESSING.value,
                            claim_token=token,
                            claimed_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                rows = (
                    await session.execute(
                        select(
                            CommunicationLog.id,
                            CommunicationLog.campaign_id,
                            CommunicationLog.customer_id,
                            CommunicationLog.recipient,
                            CommunicationLog.message,
                        )
                        .where(
                            CommunicationLog.claim_token == token,
                            CommunicationLog.status == LogStatus.PROCESSING.value,
                        )
                        .order_by(CommunicationLog.created_at, CommunicationLog.id)
                    )
                ).all()
            return [
                ClaimedLog(
                    id=row.id,
                    campaign_id=row.campaign_id,
                    customer_id=row.customer_id,
                    recipient=row.recipient,
                    message=row.message,
                    claim_token=token,
                )
                for row in rows
            ]

        claimed = await with_db_retry(_claim, settings=self._settings)
        if claimed:
            logger.bind(claim_token=token, count=len(claimed)).debug("logs_claimed")
        return claimed

    async def release_claims(self, log_ids: Iterable[int], claim_token: str) -> int:
        """Hand still-PROCESSING logs of one claim back to PENDING."""

        ids = list(log_ids)
        if not ids:
            return 0

        async def _release() -> int:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CommunicationLog)
                        .where(
                            CommunicationLog.id.in_(ids),
                            CommunicationLog.claim_token == claim_token,
                            CommunicationLog.status == LogStatus.PROCESSING.value,
                        )
                        .values(
                            status=LogStatus.PENDING.value,
                            claim_token=None,
                            claimed_at=None,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
            return result.rowcount or 0

        released = await with_db_retry(_release, settings=self._settings)
        logger.bind(claim_token=claim_token, count=released).warning("claims_released")
        return released

    async def release_stale_claims(self, timeout_sec: float | None = None) -> int:
        """Return PROCESSING logs whose claim has outlived the timeout to PENDING."""

        timeout_sec = (
            timeout_sec if timeout_sec is not None else self._settings.DELIVERY_CLAIM_TIMEOUT_SEC
        )
        cutoff = utcnow() - timedelta(seconds=timeout_sec)

        async def _release() -> int:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CommunicationLog)
                        .where(
                            CommunicationLog.status == LogStatus.PROCESSING.value,
                            CommunicationLog.claimed_at < cutoff,
                        )
                        .values(
                            status=LogStatus.PENDING.value,
                            claim_token=None,
                            claimed_at=None,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
            return result.rowcount or 0

        released = await with_db_retry(_release, settings=self._settings)
        if released:
            logger.bind(count=released, timeout_sec=timeout_sec).warning("stale_claims_released")
        return released

    async def transition(self, session: AsyncSession, outcome: DeliveryOutcome) -> bool:
        """Move an open log to SENT or FAILED inside the caller's transaction.

        Returns ``True`` only when this call performed the transition.
        """

        now = outcome.occurred_at or utcnow()
        values: dict[str, Any] = {
            "status": LogStatus.SENT.value if outcome.success else LogStatus.FAILED.value,
            "sent_at": now,
            "error_message": None if outcome.success else (outcome.error or "Unknown error"),
            "claim_token": None,
            "updated_at": now,
        }
        if outcome.delivered_at is not None and outcome.success:
            values["delivered_at"] = outcome.delivered_at
        if outcome.metadata:
            current = await session.scalar(
                select(CommunicationLog.meta).where(CommunicationLog.id == outcome.log_id)
            )
            values["meta"] = _merge_metadata(current, outcome.metadata)

        result = await session.execute(
            update(CommunicationLog)
            .where(
                CommunicationLog.id == outcome.log_id,
                CommunicationLog.status.in_(OPEN_LOG_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get(self, log_id: int) -> CommunicationLog | None:
        async with self._session_factory() as session:
            return await session.get(CommunicationLog, log_id)

    async def merge_metadata(
        self,
        log_id: int,
        metadata: Mapping[str, Any] | None,
        *,
        delivered_at: datetime | None = None,
    ) -> bool:
        """Annotate a log without touching its status."""

        async def _merge() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    log = await session.get(CommunicationLog, log_id, with_for_update=True)
                    if log is None:
                        return False
                    if metadata:
                        log.meta = _merge_metadata(log.meta, metadata)
                    if delivered_at is not None and log.status == LogStatus.SENT.value:
                        log.delivered_at = delivered_at
                    log.updated_at = utcnow()
            return True

        return await with_db_retry(_merge, settings=self._settings)

    async def append_event(self, log_id: int, event: Mapping[str, Any]) -> bool:
        """Append one interaction event to ``metadata.events``."""

        async def _append() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    log = await session.get(CommunicationLog, log_id, with_for_update=True)
                    if log is None:
                        return False
                    meta = dict(log.meta or {})
                    meta["events"] = [*meta.get("events", []), dict(event)]
                    # Reassign so the JSON column is flagged dirty.
                    log.meta = meta
                    log.updated_at = utcnow()
            return True

        return await with_db_retry(_append, settings=self._settings)
