from __future__ import annotations

import asyncio
import signal
from typing import Any

from kimaki.app import KimakiApp


async def serve(app: Any, stopping: asyncio.Event) -> None:
    """Run `app` until `stopping` is set or its startup fails; always stops it.

    `app.start()` blocks while the Discord client is connected and returns at
    once when the gateway is disabled, so only the stop event ends a healthy run.
    """
    runner = asyncio.create_task(app.start(), name="kimaki-app")
    waiter = asyncio.create_task(stopping.wait(), name="kimaki-stop-signal")
    try:
        done, _ = await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if runner in done:
            runner.result()
            await waiter
    except Exception:
        app.logger.error("kimaki stopped after a fatal error.", exc_info=True)
        raise
    finally:
        waiter.cancel()
        await app.stop()
        if not runner.done():
            runner.cancel()
        await asyncio.gather(runner, waiter, return_exceptions=True)


def install_signal_handlers(app: Any, stopping: asyncio.Event) -> None:
    def _request_stop(sig_name: str) -> None:
        if stopping.is_set():
            return
        app.logger.info("Received shutdown signal.", signal=sig_name)
        stopping.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop, sig.name)


async def _main() -> None:
    app = KimakiApp()
    stopping = asyncio.Event()
    install_signal_handlers(app, stopping)
    await serve(app, stopping)


def run() -> None:
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
