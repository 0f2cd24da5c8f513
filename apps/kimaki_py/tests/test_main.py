from __future__ import annotations

import asyncio
import signal

import pytest  # pyright: ignore[reportMissingImports]

from kimaki.main import install_signal_handlers, serve


class FakeApp:
    """`start` either raises, returns at once (gateway disabled) or blocks like a connected client."""

    def __init__(self, logger, *, start_error: Exception | None = None, block: bool = False) -> None:
        self.logger = logger
        self.start_error = start_error
        self.block = block
        self.stop_calls = 0
        self.started = asyncio.Event()

    async def start(self) -> None:
        self.started.set()
        if self.start_error is not None:
            raise self.start_error
        if self.block:
            await asyncio.Event().wait()

    async def stop(self) -> None:
        self.stop_calls += 1


async def test_failed_startup_stops_the_app_and_propagates(fake_logger):
    app = FakeApp(fake_logger, start_error=RuntimeError("database is locked"))

    with pytest.raises(RuntimeError, match="database is locked"):
        await asyncio.wait_for(serve(app, asyncio.Event()), timeout=2)

    assert app.stop_calls == 1
    assert "kimaki stopped after a fatal error." in fake_logger.messages("error")


async def test_stop_event_ends_a_connected_run(fake_logger):
    app = FakeApp(fake_logger, block=True)
    stopping = asyncio.Event()

    run = asyncio.create_task(serve(app, stopping))
    await app.started.wait()
    stopping.set()
    await asyncio.wait_for(run, timeout=2)

    assert app.stop_calls == 1
    assert fake_logger.messages("error") == []


async def test_disabled_gateway_keeps_running_until_stopped(fake_logger):
    app = FakeApp(fake_logger)
    stopping = asyncio.Event()

    run = asyncio.create_task(serve(app, stopping))
    await app.started.wait()
    await asyncio.sleep(0.01)
    assert not run.done()
    stopping.set()
    await asyncio.wait_for(run, timeout=2)

    assert app.stop_calls == 1


async def test_repeated_signals_are_logged_once(monkeypatch, fake_logger):
    loop = asyncio.get_running_loop()
    handlers: dict[int, tuple] = {}

    def _add_signal_handler(sig, callback, *args) -> None:
        handlers[sig] = (callback, args)

    monkeypatch.setattr(loop, "add_signal_handler", _add_signal_handler)
    stopping = asyncio.Event()

    install_signal_handlers(FakeApp(fake_logger), stopping)
    callback, args = handlers[signal.SIGTERM]
    callback(*args)
    handlers[signal.SIGINT][0](*handlers[signal.SIGINT][1])

    assert stopping.is_set()
    assert set(handlers) == {signal.SIGINT, signal.SIGTERM}
    assert fake_logger.messages("info") == ["Received shutdown signal."]
    assert fake_logger.records[0][2] == {"signal": "SIGTERM"}
