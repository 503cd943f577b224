import pytest

from campaign_broker.core.errors import InvalidRuleError, SegmentNotFoundError
from factories import HIGH_SPENDERS, add_customers


@pytest.mark.anyio
async def test_create_segment_caches_audience_size(container, customers):
    segment = await container.segments.create(name="High spenders", rule_set=HIGH_SPENDERS)

    assert segment.audience_size == 2
    assert segment.last_refreshed is not None
    assert segment.rules["conditionType"] == "AND"


@pytest.mark.anyio
async def test_create_segment_rejects_invalid_rules(container):
    with pytest.raises(InvalidRuleError):
        await container.segments.create(
            name="Broken", rule_set={"conditionType": "AND", "conditions": []}
        )


@pytest.mark.anyio
async def test_update_rules_recomputes_size(container, customers):
    segment = await container.segments.create(name="High spenders", rule_set=HIGH_SPENDERS)

    updated = await container.segments.update(
        segment.id,
        rule_set={"conditionType": "AND", "conditions": [
            {"field": "location", "operator": "equals", "value": "mumbai"},
        ]},
    )

    assert updated.audience_size == 2
    assert updated.conditions[0]["field"] == "location"


@pytest.mark.anyio
async def test_update_missing_segment(container):
    with pytest.raises(SegmentNotFoundError):
        await container.segments.update(999, name="ghost")


@pytest.mark.anyio
async def test_refresh_all_picks_up_new_customers(container, customers):
    segment = await container.segments.create(name="High spenders", rule_set=HIGH_SPENDERS)
    await add_customers(container.session_factory, {"name": "Eve", "total_spend": 50000})

    assert await container.segments.refresh_all() == 1
    assert (await container.segments.get(segment.id)).audience_size == 3
