"""
mail/queue.py -- Fire-and-forget email dispatch with bounded retries.

Pattern: Producer / worker pool over an asyncio.Queue. Request handlers call
enqueue() and return immediately; a fixed number of worker tasks started by
the application lifespan deliver the jobs.

Retry policy:
  Each job gets max_attempts deliveries (3 by default) with a fixed
  retry_delay between them. A job that exhausts its attempts is moved to
  `failed` and logged. `failed` keeps only the most recent failed_limit jobs
  for diagnostics. Delivery failures never propagate to the request that
  queued the job.

enqueue() is safe to call from the event loop thread or from a worker thread
(sync route handlers run in the threadpool) because it hands the job to the
loop with call_soon_threadsafe.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mail.transport import MailTransport, redact_email

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.mail.queue")


@dataclass
class EmailJob:
    to: str
    subject: str
    html: str
    attempts: int = 0


class EmailQueue:
    """Asynchronous email queue with a worker pool and fixed-backoff retries.

    Usage (inside a running event loop):
        queue = EmailQueue(SmtpTransport.from_settings(settings))
        await queue.start()
        queue.enqueue(EmailJob(to="a@x.com", subject="Hi", html="<p>hi</p>"))
        ...
        await queue.stop()
    """

    def __init__(
        self,
        transport: MailTransport,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        workers: int = 5,
        failed_limit: int = 100,
    ) -> None:
        self._transport = transport
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.worker_count = max(1, workers)
        self.failed: deque[EmailJob] = deque(maxlen=max(1, failed_limit))
        self.sent = 0
        self._queue: asyncio.Queue[EmailJob] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._workers: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, transport: MailTransport, settings: Settings) -> "EmailQueue":
        return cls(
            transport,
            max_attempts=settings.email_max_attempts,
            retry_delay=settings.email_retry_delay_seconds,
            workers=settings.email_workers,
        )

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Create the queue and spawn the worker tasks on the running loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"email-worker-{i}") for i in range(self.worker_count)
        ]
        logger.info("Email queue started with %d workers", self.worker_count)

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are logged as undelivered."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._queue is not None and not self._queue.empty():
            logger.warning("Email queue stopped with %d undelivered jobs", self._queue.qsize())
        logger.info("Email queue stopped")

    def enqueue(self, job: EmailJob) -> None:
        """Queue a job without waiting for delivery."""
        if self._loop is None or self._queue is None or not self.running:
            logger.error("Email queue not running; dropping message to %s", redact_email(job.to))
            self.failed.append(job)
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, job)

    async def join(self) -> None:
        """Wait until every queued job has been delivered or has exhausted its attempts."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: EmailJob) -> None:
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                ok = await asyncio.to_thread(self._transport.send, job.to, job.subject, job.html)
            except Exception:
                logger.exception("Email transport raised on attempt %d", job.attempts)
                ok = False
            if ok:
                self.sent += 1
                return
            if job.attempts < self.max_attempts:
                logger.info(
                    "Email to %s failed (attempt %d/%d); retrying in %.1fs",
                    redact_email(job.to),
                    job.attempts,
                    self.max_attempts,
                    self.retry_delay,
                )
                await asyncio.sleep(self.retry_delay)
        self.failed.append(job)
        logger.error("Email to %s failed after %d attempts", redact_email(job.to), job.attempts)
