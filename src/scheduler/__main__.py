from __future__ import annotations

import asyncio
import logging

from src.config import get_settings
from src.db.connection import get_sessionmaker
from src.ops.events import configure_ops_event_logging
from src.scheduler.main import scheduler_loop

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    configure_ops_event_logging(max_size=settings.ops_event_buffer_size)
    logger.info(
        "Starting deadline sweep scheduler (every %.0fs, retry window %.1fh)",
        settings.deadline_sweep_interval_seconds,
        settings.notification_retry_window_hours,
    )
    asyncio.run(
        scheduler_loop(
            session_factory=get_sessionmaker(),
            interval_seconds=settings.deadline_sweep_interval_seconds,
            settings=settings,
        )
    )


main()
