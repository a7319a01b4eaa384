import os
from datetime import datetime, timedelta, timezone

import pytest

from library import Library
from ui_helpers import OUTPUT_MODE_ENV


class FrozenClock:
    """Deterministic stand-in for utcnow(); tests move time forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, request, clock):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()


@pytest.fixture(autouse=True)
def _plain_cli_output(monkeypatch):
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)
    yield
    os.environ.pop(OUTPUT_MODE_ENV, None)
