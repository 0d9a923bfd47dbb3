"""
IsolatedWorker: run one CPU-bound task off the event loop with a hard deadline.

Every submit() gets its own single-worker executor, torn down in all cases (success,
failure, timeout), so a stuck computation cannot outlive its deadline by holding a
shared pool. In process mode the child process is terminated on timeout; threads
cannot be killed, so in thread mode a timed-out task is abandoned.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Callable, Literal, Optional, TypeVar

from fluency.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerTimeoutError(Exception):
    """Task did not finish within its timeout; the executor was torn down."""


def _terminate(executor: Executor) -> None:
    if isinstance(executor, ProcessPoolExecutor):
        for proc in list((getattr(executor, "_processes", None) or {}).values()):
            try:
                proc.terminate()
            except (OSError, AttributeError) as e:
                logger.debug("Worker process terminate failed: %s", e)
    executor.shutdown(wait=False, cancel_futures=True)


class IsolatedWorker:
    def __init__(
        self,
        mode: Optional[Literal["thread", "process"]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._mode = mode or settings.WORKER_MODE
        self._timeout = timeout if timeout is not None else settings.WORKER_TIMEOUT_SECONDS

    @property
    def mode(self) -> str:
        return self._mode

    def _new_executor(self) -> Executor:
        if self._mode == "process":
            return ProcessPoolExecutor(max_workers=1)
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="fluency-worker")

    async def submit(self, task: Callable[[], T], timeout: Optional[float] = None) -> T:
        """Run task; raise WorkerTimeoutError past the deadline. Task errors propagate."""
        limit = self._timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        executor = self._new_executor()
        try:
            return await asyncio.wait_for(loop.run_in_executor(executor, task), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Worker task exceeded %.1fs (%s mode); tearing down", limit, self._mode)
            raise WorkerTimeoutError(f"task exceeded {limit}s") from None
        finally:
            _terminate(executor)
