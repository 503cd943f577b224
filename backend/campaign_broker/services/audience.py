"""Resolve compiled rule sets into concrete customer audiences."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Mapping

from sqlalchemy import and_, func, select
from sqlalchemy.sql.elements import ColumnElement

from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.db import SessionFactory
from campaign_broker.models.customer import Customer
from campaign_broker.services.rule_compiler import compile_rule_set


@dataclass(slots=True)
class AudiencePreview:
    count: int
    sample: list[Customer] = field(default_factory=list)


class AudienceResolver:
    """Counts, samples and materializes customers matching a rule set.

    Counts are always exact over the whole customer table. Results are
    ordered by customer id so repeated resolutions are identical.
    """

    def __init__(self, session_factory: SessionFactory, settings: Settings | None = None):
        self._session_factory = session_factory
        self._settings = settings or default_settings

    def _predicate(
        self,
        rule_set: Mapping[str, Any],
        *,
        active_only: bool,
        now: datetime | None,
    ) -> ColumnElement[bool]:
        predicate = compile_rule_set(
            rule_set, now=now, strict=self._settings.RULES_STRICT_OPERATORS
        )
        if active_only:
            predicate = and_(predicate, Customer.is_active.is_(True))
        return predicate

    async def count(
        self,
        rule_set: Mapping[str, Any],
        *,
        active_only: bool = False,
        now: datetime | None = None,
    ) -> int:
        predicate = self._predicate(rule_set, active_only=active_only, now=now)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count(Customer.id)).where(predicate))
        return int(total or 0)

    async def preview(
        self,
        rule_set: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> AudiencePreview:
        """Exact count plus a handful of matching customers for the UI."""

        predicate = self._predicate(rule_set, active_only=False, now=now)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count(Customer.id)).where(predicate))
            sample = (
                await session.scalars(
                    select(Customer)
                    .where(predicate)
                    .order_by(Customer.id)
                    .limit(self._settings.SEGMENT_PREVIEW_SAMPLE_SIZE)
                )
            ).all()
        return AudiencePreview(count=int(total or 0), sample=list(sample))

    async def iter_customers(
        self,
        rule_set: Mapping[str, Any],
        *,
        active_only: bool = False,
        chunk_size: int | None = None,
        now: datetime | None = None,
    ) -> AsyncIterator[Customer]:
        """Yield every matching customer, fetching in keyset-paginated chunks."""

        # Compile once so every chunk sees the same "now".
        predicate = self._predicate(rule_set, active_only=active_only, now=now)
        chunk_size = chunk_size or self._settings.LOG_INSERT_BATCH_SIZE
        last_id = 0
        while True:
            async with self._session_factory() as session:
                chunk = (
                    await session.scalars(
                        select(Customer)
                        .where(predicate, Customer.id > last_id)
                        .order_by(Customer.id)
                        .limit(chunk_size)
                    )
                ).all()
            if not chunk:
                return
            for customer in chunk:
                yield customer
            last_id = chunk[-1].id
            if len(chunk) < chunk_size:
                return
