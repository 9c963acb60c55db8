"""Window-side feedback service.

Runs one `FeedbackService` (HTTP listener + panel gateway) until SIGINT/SIGTERM,
then stops it so the registry entry and discovery file are removed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from .config import FeedbackConfig
from .service import FeedbackService

logger = logging.getLogger("panel_feedback")


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def run(config: FeedbackConfig | None = None) -> int:
    cfg = config or FeedbackConfig.from_env()
    service = FeedbackService(cfg)
    service.set_context()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    port = await service.start()
    if not port:
        await service.stop()
        return 2

    logger.info("panel feedback ready: %s", service.status())
    try:
        await stop.wait()
    finally:
        await service.stop()
    return 0


def main() -> None:
    cfg = FeedbackConfig.from_env()
    configure_logging(cfg.debug)
    try:
        raise SystemExit(asyncio.run(run(cfg)))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
