"""Polling worker loop.

Workers compete for jobs through a claim function (for ingestion, the
atomic ``pending -> processing`` update on ``knowledge_files``). Any number
of workers may run, in separate processes or as coroutines in one process.

Example usage:
    service = IngestionService(...)
    config = WorkerConfig(poll_interval=10.0, shutdown_timeout=30.0)
    worker = Worker(service.claim_next_file, config, job_handler=service.process_file)

    # Run worker loop (blocks until shutdown signal)
    await worker.run()
"""

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

JobT = TypeVar("JobT")


@dataclass
class WorkerConfig:
    """Configuration for a worker.

    Attributes:
        poll_interval: Seconds between claim attempts when idle.
        shutdown_timeout: Seconds to wait for the current job once a
            shutdown signal (SIGTERM/SIGINT) has been received.

    Raises:
        ValueError: If either value is not positive.

    """

    poll_interval: float = 10.0
    shutdown_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.poll_interval <= 0:
            raise ValueError(
                f"poll_interval must be positive, got {self.poll_interval}. "
                "A zero or negative poll interval would cause a tight loop."
            )
        if self.shutdown_timeout <= 0:
            raise ValueError(f"shutdown_timeout must be positive, got {self.shutdown_timeout}.")


class Worker(Generic[JobT]):
    """Claims jobs and hands them to a handler until told to stop.

    The loop:
    1. Calls ``claim_job``; a falsy result means nothing is pending.
    2. Processes a claimed job with ``job_handler``.
    3. Sleeps ``poll_interval`` when idle.
    4. Exits after the current job on SIGTERM/SIGINT or ``stop()``.

    Handler exceptions are logged and the loop keeps going; durable failure
    state belongs to the handler.
    """

    def __init__(
        self,
        claim_job: Callable[[], Awaitable[JobT | None]],
        config: WorkerConfig,
        job_handler: Callable[[JobT], Awaitable[Any]],
        worker_id: str | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self._claim_job = claim_job
        self._config = config
        self._handler = job_handler
        self._worker_id = worker_id
        self._install_signal_handlers = install_signal_handlers
        self._running = False
        self._wakeup = asyncio.Event()

    @property
    def worker_id(self) -> str | None:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop after the current job; an idle worker wakes up immediately."""
        self._running = False
        self._wakeup.set()

    def _setup_signal_handlers(self) -> None:
        def handle_signal(signum: int, frame: Any) -> None:
            signal_name = signal.Signals(signum).name
            logger.info(
                f"Received {signal_name} signal, finishing current job and shutting down...",
                extra={"signal": signal_name},
            )
            self.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

    async def run(self) -> None:
        """Run the worker loop until shutdown."""
        self._running = True
        self._wakeup.clear()
        if self._install_signal_handlers:
            self._setup_signal_handlers()

        worker_label = f"Worker[{self._worker_id}]" if self._worker_id else "Worker"
        logger.info(
            f"{worker_label} starting",
            extra={
                "worker_id": self._worker_id,
                "poll_interval": self._config.poll_interval,
                "shutdown_timeout": self._config.shutdown_timeout,
            },
        )

        while self._running:
            job = await self._claim()
            if job is not None:
                await self._process_job(job)
            elif self._running:
                await self._idle()

        logger.info(f"{worker_label} stopped", extra={"worker_id": self._worker_id})

    async def _claim(self) -> JobT | None:
        try:
            return await self._claim_job()
        except Exception as e:
            logger.error(
                f"Failed to claim job: {e}",
                extra={"worker_id": self._worker_id, "error": str(e)},
                exc_info=True,
            )
            return None

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self._config.poll_interval)
        except TimeoutError:
            pass

    async def _process_job(self, job: JobT) -> None:
        job_id = getattr(job, "id", None)
        start_time = time.time()
        try:
            await self._handler(job)
            logger.info(
                "Job finished",
                extra={
                    "worker_id": self._worker_id,
                    "job_id": job_id,
                    "duration_ms": int((time.time() - start_time) * 1000),
                },
            )
        except Exception as e:
            logger.error(
                "Job processing failed",
                extra={
                    "worker_id": self._worker_id,
                    "job_id": job_id,
                    "error": str(e),
                    "duration_ms": int((time.time() - start_time) * 1000),
                },
                exc_info=True,
            )
