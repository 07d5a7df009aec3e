"""Execute agent jobs inline or on a thread pool with retries."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from ..errors import AgentRunFailed

logger = logging.getLogger(__name__)

AgentJob = Callable[[int], Any]


class AgentDispatcher(Protocol):
    def dispatch(self, conversation_id: int) -> None: ...


class InlineDispatcher:
    """Run the job immediately in the calling thread; errors propagate."""

    def __init__(self, job: AgentJob) -> None:
        self._job = job

    def dispatch(self, conversation_id: int) -> None:
        self._job(conversation_id)


class ThreadPoolDispatcher:
    """Wrapper around :class:`ThreadPoolExecutor` running one job per conversation.

    ``AgentRunFailed`` is retried up to ``max_attempts`` times with a linear
    backoff (``backoff_seconds * attempt``).  Any other error, or the last
    failed attempt, is logged and stored on the job's future.
    """

    def __init__(
        self,
        job: AgentJob,
        *,
        max_workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agent")
        self._job = job
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._futures: dict[int, Future] = {}

    def dispatch(self, conversation_id: int) -> None:
        self.submit(conversation_id)

    def submit(self, conversation_id: int) -> Future:
        future = self.executor.submit(self._run, conversation_id)
        with self._lock:
            self._futures[conversation_id] = future
        future.add_done_callback(lambda _f: self._forget(conversation_id, _f))
        return future

    def get(self, conversation_id: int) -> Future | None:
        with self._lock:
            return self._futures.get(conversation_id)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    def _forget(self, conversation_id: int, future: Future) -> None:
        with self._lock:
            if self._futures.get(conversation_id) is future:
                del self._futures[conversation_id]

    def _run(self, conversation_id: int) -> Any:
        attempt = 1
        while True:
            try:
                return self._job(conversation_id)
            except AgentRunFailed as exc:
                if attempt >= self._max_attempts:
                    logger.exception(
                        "Agent job failed after %d attempt(s)",
                        attempt,
                        extra={"conversation_id": conversation_id},
                    )
                    raise
                logger.warning(
                    "Agent job attempt %d failed: %s",
                    attempt,
                    exc,
                    extra={"conversation_id": conversation_id},
                )
                self._sleep(self._backoff * attempt)
                attempt += 1
            except Exception:
                logger.exception("Agent job crashed", extra={"conversation_id": conversation_id})
                raise


__all__ = ["AgentDispatcher", "AgentJob", "InlineDispatcher", "ThreadPoolDispatcher"]
