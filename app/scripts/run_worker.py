"""Standalone outbound worker.

Run as a separate process (e.g. a Railway worker service):
    python -m app.scripts.run_worker
"""

from __future__ import annotations

import asyncio
import logging
import signal

from app.services import container
from config import settings

_LOGGER = logging.getLogger("prima.worker")


async def main() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    async with container.open_services(settings) as services:
        await services.worker.start()
        await stop.wait()
        _LOGGER.info("Shutdown requested, finishing in-flight sends")
        await services.worker.stop()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(
        level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main())
