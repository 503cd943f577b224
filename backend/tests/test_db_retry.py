import pytest
from sqlalchemy.exc import OperationalError

from campaign_broker.core.config import settings
from campaign_broker.core.db_retry import is_retriable, with_db_retry


class DummyOrig(Exception):
    def __init__(self, code: int, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.args = (code, message)


@pytest.mark.anyio
async def test_db_retry_respects_config(monkeypatch):
    monkeypatch.setattr(settings, "DB_RETRY_ATTEMPTS", 2)
    monkeypatch.setattr(settings, "DB_RETRY_BASE_DELAY", 0.0)
    monkeypatch.setattr(settings, "DB_RETRY_JITTER", 0.0)

    calls = {"count": 0}

    async def flaky_operation():
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("stmt", {}, DummyOrig(1213, "deadlock"))
        return "ok"

    result = await with_db_retry(flaky_operation)

    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.anyio
async def test_db_retry_gives_up_after_attempts():
    calls = {"count": 0}

    async def always_locked():
        calls["count"] += 1
        raise OperationalError("stmt", {}, DummyOrig(1205, "Lock wait timeout exceeded"))

    with pytest.raises(OperationalError):
        await with_db_retry(always_locked, attempts=3, base_delay=0.0, jitter=0.0)

    assert calls["count"] == 3


@pytest.mark.anyio
async def test_non_retriable_error_is_raised_immediately():
    calls = {"count": 0}

    async def bad_sql():
        calls["count"] += 1
        raise OperationalError("stmt", {}, DummyOrig(1064, "syntax error"))

    with pytest.raises(OperationalError):
        await with_db_retry(bad_sql, attempts=3, base_delay=0.0, jitter=0.0)

    assert calls["count"] == 1


def test_sqlite_lock_is_retriable():
    exc = OperationalError("stmt", {}, Exception("database is locked"))
    assert is_retriable(exc)
    assert is_retriable(OperationalError("stmt", {}, DummyOrig(0, "x", sqlstate="40001")))
