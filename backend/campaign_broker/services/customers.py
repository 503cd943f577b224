"""Bulk customer ingestion from the ``customer.bulk.create`` channel."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import select

from campaign_broker.core.db import SessionFactory, utcnow
from campaign_broker.models.customer import Customer
from campaign_broker.schemas.customer import CustomerImportRow

BULK_BATCH_SIZE = 100


@dataclass(slots=True)
class BulkUpsertResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0


def _customer_values(raw: Any) -> dict[str, Any]:
    """Validated column values; only keys present in ``raw`` are returned."""

    return CustomerImportRow.model_validate(raw).model_dump(exclude_unset=True)


class CustomerService:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def bulk_upsert(
        self,
        customers: Iterable[Mapping[str, Any]],
        *,
        batch_size: int = BULK_BATCH_SIZE,
    ) -> BulkUpsertResult:
        """Insert or update customers keyed by email, one transaction per batch.

        Rows that fail validation (no name or email, wrong types) are
        skipped and logged; a bad row never aborts the rest of the import.
        """

        result = BulkUpsertResult()
        batch: list[dict[str, Any]] = []
        for raw in customers:
            try:
                batch.append(_customer_values(raw))
            except ValidationError as exc:
                result.skipped += 1
                logger.bind(errors=exc.error_count()).debug("customer_row_skipped")
                continue
            if len(batch) >= batch_size:
                await self._upsert_batch(batch, result)
                batch = []
        if batch:
            await self._upsert_batch(batch, result)

        logger.bind(
            created=result.created, updated=result.updated, skipped=result.skipped
        ).info("customers_bulk_upserted")
        return result

    async def _upsert_batch(self, batch: list[dict[str, Any]], result: BulkUpsertResult) -> None:
        emails = {values["email"] for values in batch}
        async with self._session_factory() as session:
            async with session.begin():
                existing = {
                    customer.email: customer
                    for customer in (
                        await session.scalars(select(Customer).where(Customer.email.in_(emails)))
                    ).all()
                }
                now = utcnow()
                for values in batch:
                    customer = existing.get(values["email"])
                    if customer is None:
                        customer = Customer(**values, created_at=now, updated_at=now)
                        session.add(customer)
                        existing[customer.email] = customer
                        result.created += 1
                        continue
                    for attr, value in values.items():
                        setattr(customer, attr, value)
                    customer.updated_at = now
                    result.updated += 1
