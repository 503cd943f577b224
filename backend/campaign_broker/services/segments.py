"""Segment persistence and audience-size cache maintenance."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger
from sqlalchemy import select, update

from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.core.errors import InvalidRuleError, SegmentNotFoundError
from campaign_broker.models.segment import Segment
from campaign_broker.services.audience import AudiencePreview, AudienceResolver
from campaign_broker.services.rule_compiler import validate_rule_set


def _normalize_rules(rule_set: Mapping[str, Any]) -> tuple[str, list[dict[str, Any]]]:
    condition_type = str(
        rule_set.get("conditionType", rule_set.get("condition_type")) or "AND"
    ).upper()
    conditions = [dict(condition) for condition in rule_set.get("conditions") or []]
    return condition_type, conditions


class SegmentService:
    """Creates and updates segments and keeps their cached audience size fresh."""

    def __init__(self, session_factory: SessionFactory, resolver: AudienceResolver):
        self._session_factory = session_factory
        self._resolver = resolver

    async def get(self, segment_id: int) -> Segment:
        async with self._session_factory() as session:
            segment = await session.get(Segment, segment_id)
        if segment is None:
            raise SegmentNotFoundError(segment_id)
        return segment

    async def preview(self, rule_set: Mapping[str, Any]) -> AudiencePreview:
        return await self._resolver.preview(rule_set)

    async def create(
        self,
        *,
        name: str,
        rule_set: Mapping[str, Any],
        description: str | None = None,
    ) -> Segment:
        validate_rule_set(rule_set)
        condition_type, conditions = _normalize_rules(rule_set)
        async with self._session_factory() as session:
            segment = Segment(
                name=name,
                description=description,
                condition_type=condition_type,
                conditions=conditions,
            )
            session.add(segment)
            await session.commit()
            segment_id = segment.id
        logger.bind(segment_id=segment_id).info("segment_created")
        return await self.refresh_audience_size(segment_id)

    async def update(
        self,
        segment_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        rule_set: Mapping[str, Any] | None = None,
    ) -> Segment:
        values: dict[str, Any] = {}
        if name is not None:
            values["name"] = name
        if description is not None:
            values["description"] = description
        if rule_set is not None:
            validate_rule_set(rule_set)
            values["condition_type"], values["conditions"] = _normalize_rules(rule_set)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Segment)
                    .where(Segment.id == segment_id)
                    .values(**values, updated_at=utcnow())
                )
                if result.rowcount == 0:
                    raise SegmentNotFoundError(segment_id)

        if rule_set is not None:
            return await self.refresh_audience_size(segment_id)
        return await self.get(segment_id)

    async def refresh_audience_size(self, segment_id: int) -> Segment:
        """Recount the segment's audience and stamp ``last_refreshed``."""

        segment = await self.get(segment_id)
        count = await self._resolver.count(segment.rules)
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Segment)
                    .where(Segment.id == segment_id)
                    .values(audience_size=count, last_refreshed=utcnow())
                )
        logger.bind(segment_id=segment_id, audience_size=count).debug("segment_refreshed")
        return await self.get(segment_id)

    async def refresh_all(self) -> int:
        """Refresh every segment; returns how many were refreshed.

        A segment whose stored rules no longer compile is skipped and logged
        so one bad segment does not block the rest.
        """

        async with self._session_factory() as session:
            segment_ids = (await session.scalars(select(Segment.id).order_by(Segment.id))).all()

        logger.bind(count=len(segment_ids)).info("segments_refresh_started")
        refreshed = 0
        for segment_id in segment_ids:
            try:
                await self.refresh_audience_size(segment_id)
            except InvalidRuleError as exc:
                logger.bind(segment_id=segment_id, error=str(exc)).error("segment_rules_invalid")
                continue
            except SegmentNotFoundError:
                # Deleted between listing and refreshing.
                continue
            refreshed += 1
        return refreshed
