import os
import sys
from pathlib import Path

import pytest

# Settings are read at import time; keep tests off MySQL and Redis.
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "memory://")
os.environ.setdefault("LOG_SERIALIZE", "false")

# Add the backend directory so `campaign_broker` imports resolve during tests
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.append(str(BACKEND_DIR))

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from campaign_broker.bus.message_bus import LocalMessageBus  # noqa: E402
from campaign_broker.container import build_container  # noqa: E402
from campaign_broker.core.config import Settings  # noqa: E402
from factories import ScriptedGateway, seed_standard_customers  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def broker_settings(tmp_path) -> Settings:
    return Settings(
        DB_URL=f"sqlite+aiosqlite:///{tmp_path / 'broker.db'}",
        REDIS_URL="memory://",
        LOG_SERIALIZE=False,
        VENDOR_LATENCY_MIN_MS=0,
        VENDOR_LATENCY_MAX_MS=0,
        VENDOR_SEND_TIMEOUT_SEC=2.0,
        DB_RETRY_BASE_DELAY=0.0,
        DB_RETRY_JITTER=0.0,
    )


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
async def container(broker_settings, gateway):
    container = build_container(broker_settings, bus=LocalMessageBus(), gateway=gateway)
    await container.create_schema()
    try:
        yield container
    finally:
        await container.close()


@pytest.fixture
def session_factory(container):
    return container.session_factory


@pytest.fixture
async def customers(session_factory):
    return await seed_standard_customers(session_factory)
