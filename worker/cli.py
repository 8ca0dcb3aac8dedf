"""Worker CLI implementation."""

import asyncio
import signal
import sys
from typing import Optional

import click
import structlog

from order_saga.config import get_settings
from order_saga.runtime import create_manager
from worker.runner import WorkerRunner


logger = structlog.get_logger(__name__)


def setup_signal_handlers(runner: WorkerRunner):
    """Setup signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.ensure_future(_shutdown(runner, s)))


async def _shutdown(runner: WorkerRunner, sig) -> None:
    logger.info("shutdown_signal_received", signal=sig)
    await runner.stop()


@click.command()
@click.option(
    '--concurrency',
    '-c',
    type=int,
    help='Number of instances executed at once'
)
@click.option(
    '--poll-interval',
    '-p',
    type=float,
    help='Seconds between scans for Running instances'
)
@click.option(
    '--id',
    'worker_id',
    help='Worker ID (auto-generated if not provided)'
)
def main(
    concurrency: Optional[int],
    poll_interval: Optional[float],
    worker_id: Optional[str]
):
    """Resume and execute Running order instances."""
    settings = get_settings()
    if concurrency:
        settings = settings.model_copy(update={"worker_concurrency": concurrency})

    runner = WorkerRunner(
        create_manager(settings),
        worker_id=worker_id,
        poll_interval=poll_interval or settings.worker_poll_interval
    )

    async def serve():
        setup_signal_handlers(runner)
        await runner.run()

    logger.info(
        "worker_starting",
        concurrency=settings.worker_concurrency,
        worker_id=runner.worker_id
    )

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
    except Exception as e:
        logger.error("worker_error", error=str(e))
        sys.exit(1)

    logger.info("worker_stopped")


if __name__ == "__main__":
    main()
