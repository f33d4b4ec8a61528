"""Ingestion worker entrypoint.

Usage:
    # Run one worker polling every 10 seconds (default)
    python -m persona.worker

    # Run four concurrent pollers in this process
    python -m persona.worker --concurrency=4 --poll-interval=2

Any number of these processes may run against the same database; the claim
on ``knowledge_files`` keeps them from processing the same file twice.
"""

import argparse
import asyncio
import signal
import sys

from .core.config import get_settings_instance
from .core.database import close_db, get_async_session_local
from .core.logging import get_logger, setup_logging
from .core.worker import Worker, WorkerConfig
from .llm.embedding_client import close_embedding_client, get_embedding_client
from .processors.chunker import TextChunker
from .processors.document_parser import DocumentParser
from .services.ingestion_service import IngestionService
from .storage.blob_storage import get_blob_storage

logger = get_logger(__name__)


def build_ingestion_service() -> IngestionService:
    settings = get_settings_instance()
    return IngestionService(
        session_factory=get_async_session_local(),
        storage=get_blob_storage(),
        parser=DocumentParser(),
        chunker=TextChunker.from_settings(settings),
        embedder=get_embedding_client(),
        stale_after_seconds=settings.ingestion_stale_after_seconds,
    )


async def run_worker(
    poll_interval: float = 10.0,
    shutdown_timeout: float = 30.0,
    concurrency: int = 1,
) -> None:
    """Run ``concurrency`` pollers until SIGTERM/SIGINT.

    Args:
        poll_interval: Seconds between claim attempts when idle.
        shutdown_timeout: Seconds to wait for in-flight files on shutdown.
        concurrency: Number of concurrent worker tasks to run.

    """
    service = build_ingestion_service()

    try:
        requeued = await service.requeue_stale_files()
        logger.info("Stale file check complete", extra={"requeued": requeued})
    except Exception as e:
        logger.error("Failed to requeue stale files: %s", e, exc_info=True)
        sys.exit(1)

    config = WorkerConfig(poll_interval=poll_interval, shutdown_timeout=shutdown_timeout)
    concurrency = max(1, concurrency)
    workers = [
        Worker(
            service.claim_next_file,
            config,
            job_handler=service.process_file,
            worker_id=f"{i + 1}/{concurrency}",
            install_signal_handlers=False,
        )
        for i in range(concurrency)
    ]

    stop_requested = asyncio.Event()

    def request_stop() -> None:
        logger.info("Shutdown requested, finishing in-flight files...")
        for w in workers:
            w.stop()
        stop_requested.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_stop)

    logger.info(
        "Starting ingestion workers",
        extra={"concurrency": concurrency, "poll_interval": poll_interval, "shutdown_timeout": shutdown_timeout},
    )

    tasks = []
    for w in workers:
        task = asyncio.create_task(w.run(), name=f"worker:{w.worker_id}")

        def _on_done(t: asyncio.Task, worker_id: str | None = w.worker_id) -> None:
            if t.cancelled():
                logger.warning("Worker %s was cancelled", worker_id)
            elif exc := t.exception():
                logger.error("Worker %s failed with error: %s", worker_id, exc, exc_info=exc)

        task.add_done_callback(_on_done)
        tasks.append(task)

    try:
        await stop_requested.wait()
        _, pending = await asyncio.wait(tasks, timeout=shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled workers still busy after shutdown timeout", extra={"count": len(pending)})
            await asyncio.gather(*pending, return_exceptions=True)
    finally:
        await close_embedding_client()
        await close_db()
        logger.info("Workers shutdown complete")


def main() -> None:
    """Start worker process."""
    parser = argparse.ArgumentParser(description="Persona ingestion worker")
    settings = get_settings_instance()

    parser.add_argument(
        "--poll-interval",
        type=float,
        default=settings.worker_poll_interval,
        help=f"Seconds between claim attempts when idle (default: {settings.worker_poll_interval})",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=settings.worker_shutdown_timeout,
        help=f"Seconds to wait for in-flight files on shutdown (default: {settings.worker_shutdown_timeout})",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.worker_concurrency,
        help=f"Number of concurrent worker tasks (default: {settings.worker_concurrency})",
    )
    args = parser.parse_args()

    setup_logging()
    logger.info(
        "Worker process starting",
        extra={
            "poll_interval": args.poll_interval,
            "shutdown_timeout": args.shutdown_timeout,
            "concurrency": args.concurrency,
        },
    )

    try:
        asyncio.run(
            run_worker(
                poll_interval=args.poll_interval,
                shutdown_timeout=args.shutdown_timeout,
                concurrency=args.concurrency,
            )
        )
    except Exception as e:
        logger.error("Worker failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
