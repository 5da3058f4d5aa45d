"""Bounded background pool for document processing.

Each submitted run becomes a :class:`~concurrent.futures.Future`, so a
failure is captured and observable instead of only being logged.
"""

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

from src.utils.logger import get_logger

logger = get_logger(__name__)


class ProcessingWorker:
    """Runs pipeline jobs on a fixed-size thread pool.

    Args:
        run: Callable taking ``(ocr_id, attempt)``; normally
            :meth:`DocumentPipeline.run`.
        max_workers: Upper bound on concurrently processed documents.
    """

    def __init__(self, run: Callable[[str, int], object], max_workers: int = 4) -> None:
        self._run = run
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ocr-worker")
        self._futures: dict[Future, str] = {}
        self._lock = threading.Lock()

    def submit(self, ocr_id: str, attempt: int) -> Future:
        """Queue a processing run and return its future."""
        future = self._executor.submit(self._run, ocr_id, attempt)
        with self._lock:
            self._futures[future] = ocr_id
        future.add_done_callback(self._on_done)
        logger.debug("Queued %s (attempt %d)", ocr_id, attempt)
        return future

    def _on_done(self, future: Future) -> None:
        with self._lock:
            ocr_id = self._futures.pop(future, "?")
        exc = future.exception()
        if exc is not None:
            logger.error("Background processing of %s failed: %s", ocr_id, exc)

    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def wait_all(self, timeout: float | None = None) -> None:
        """Block until every queued run has finished."""
        with self._lock:
            futures = list(self._futures)
        wait_futures(futures, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
