"""Bounded worker pool that performs the segment uploads."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

from ingest_client import UploadResult

LOGGER = logging.getLogger("pocketstream.delivery")

DEFAULT_WORKERS = 4
DEFAULT_MAX_PENDING = 32

_STOP = object()


class DeliveryPool:
    """Run ``upload`` for every submitted path on a fixed set of threads.

    ``submit`` blocks once ``max_pending`` paths are waiting, which in turn
    stalls whoever feeds the pool. Every outcome is kept so that ``close``
    can hand the full list back to the caller.
    """

    def __init__(
        self,
        upload: Callable[[str], UploadResult],
        *,
        workers: int = DEFAULT_WORKERS,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        if workers <= 0:
            raise ValueError("workers must be positive")
        if max_pending <= 0:
            raise ValueError("max_pending must be positive")
        self._upload = upload
        self._worker_count = workers
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_pending)
        self._threads: list[threading.Thread] = []
        self._results: list[UploadResult] = []
        self._results_lock = threading.Lock()
        self._closed = threading.Event()
        self._submit_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self._closed.clear()
        self._threads = [
            threading.Thread(
                target=self._run_loop, name=f"DeliveryWorker-{index}", daemon=True
            )
            for index in range(1, self._worker_count + 1)
        ]
        for thread in self._threads:
            thread.start()
        LOGGER.debug("Started %d delivery worker(s)", self._worker_count)

    def submit(self, path: str) -> None:
        # Held across the blocking put so that close() queues its stop
        # markers behind every accepted path.
        with self._submit_lock:
            if self._closed.is_set():
                raise RuntimeError("delivery pool is closed")
            self._queue.put(path)

    def results(self) -> list[UploadResult]:
        with self._results_lock:
            return list(self._results)

    def close(self, timeout: Optional[float] = None) -> list[UploadResult]:
        """Finish queued uploads, stop the workers and return every outcome."""

        if not self._closed.is_set():
            self._closed.set()
            with self._submit_lock:
                for _ in self._threads:
                    self._queue.put(_STOP)

        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                LOGGER.warning("%s did not stop within timeout", thread.name)
        self._threads = []
        return self.results()

    def _run_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                result = self._deliver(str(item))
                with self._results_lock:
                    self._results.append(result)
            finally:
                self._queue.task_done()

    def _deliver(self, path: str) -> UploadResult:
        try:
            return self._upload(path)
        except Exception as exc:  # noqa: BLE001 - one failed upload must not kill the worker
            LOGGER.exception("Unexpected error while uploading %s", path)
            return UploadResult(path, False, error=f"{exc.__class__.__name__}: {exc}")
