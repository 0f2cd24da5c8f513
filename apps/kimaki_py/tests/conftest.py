from __future__ import annotations

from datetime import datetime, timedelta

import pytest  # pyright: ignore[reportMissingImports]

from kimaki.db.database import Database


class FakeLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, object]]] = []

    def _record(self, level: str, message: str, **kwargs) -> None:
        self.records.append((level, message, kwargs))

    def debug(self, message: str, **kwargs) -> None:
        self._record("debug", message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._record("info", message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._record("warning", message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._record("error", message, **kwargs)

    def messages(self, level: str) -> list[str]:
        return [message for lvl, message, _ in self.records if lvl == level]


class FakeClock:
    """Naive-UTC wall clock for the store; advance() moves it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def fake_logger() -> FakeLogger:
    return FakeLogger()


@pytest.fixture
async def database(tmp_path, fake_logger):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'discord-sessions.db'}", logger=fake_logger)
    await db.initialize()
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
