"""Deferred post-processing: scheduled tasks with retry and backoff."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ExtractionError, SummarizationError
from .logging import JSONLLogger

logger = logging.getLogger(__name__)

RETRYABLE = (SummarizationError, ExtractionError)


class BackgroundTasks:
    """Runs summarization and extraction passes off the response path.

    Failed passes are retried with exponential backoff up to
    ``attempts`` times and then abandoned, leaving prior state untouched.
    """

    def __init__(
        self,
        attempts: int = 3,
        backoff: float = 1.0,
        event_log: JSONLLogger | None = None,
    ) -> None:
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.event_log = event_log
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        *,
        session_id: str | None = None,
        contact_id: str | None = None,
    ) -> asyncio.Task:
        """Schedule ``job`` to run in the background."""
        task = asyncio.create_task(
            self._run(name, job, session_id=session_id, contact_id=contact_id),
            name=f"{name}:{session_id or contact_id or ''}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        *,
        session_id: str | None,
        contact_id: str | None,
    ) -> Any:
        # Jobs are often lambdas returning a coroutine; retry needs a coroutine function.
        @retry(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, max=30),
            retry=retry_if_exception_type(RETRYABLE),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        async def attempt() -> Any:
            return await job()

        try:
            return await attempt()
        except RetryError as e:
            error = e.last_attempt.exception()
            logger.warning("%s abandoned after %d attempts: %s", name, self.attempts, error)
            self._log("postprocess_abandoned", name, session_id, contact_id, str(error))
        except Exception as e:
            logger.exception("%s failed", name)
            self._log("postprocess_failed", name, session_id, contact_id, str(e))
        return None

    def _log(
        self,
        event: str,
        name: str,
        session_id: str | None,
        contact_id: str | None,
        error: str,
    ) -> None:
        if self.event_log is not None:
            self.event_log.log_postprocess(
                event,
                session_id=session_id,
                contact_id=contact_id,
                error=error,
                job=name,
            )

    async def drain(self) -> None:
        """Wait until every scheduled task, including ones scheduled meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
