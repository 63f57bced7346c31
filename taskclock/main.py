"""taskclock entry point: runs the scheduler until interrupted."""

import asyncio
import contextlib
import logging
import signal

from taskclock.config import settings
from taskclock.logging_setup import configure_logging
from taskclock.scheduler.engine import SchedulerEngine
from taskclock.scheduler.executor import TaskExecutor
from taskclock.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def serve(stop: asyncio.Event | None = None) -> SchedulerEngine:
    """Run the scheduler on the shared store until *stop* is set or a signal arrives."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in _STOP_SIGNALS:
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    engine = SchedulerEngine(TaskStore.get(), TaskExecutor())
    await engine.start()
    logger.info("Using tasks file %s", engine.get_tasks_file_path())
    try:
        await stop.wait()
    finally:
        await engine.stop()
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
    return engine


def main() -> None:
    """Configure logging and run the scheduler."""
    configure_logging()
    logger.info("Starting taskclock (tz=%s)", settings.scheduler_timezone)
    asyncio.run(serve())


if __name__ == "__main__":
    main()
