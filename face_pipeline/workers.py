"""
Inference Worker Pool
=====================

Inference is CPU-bound, blocking work. It runs on dedicated thread pools,
never on the caller's thread, so a slow or hung model call cannot stall
unrelated work.

POOLS:
------
- detection: one task per photo (letterbox, detector, decode, NMS)
- embedding: one task per face; faces of the same photo run concurrently
- gallery:   asynchronous gallery updates

Threads, not processes: the model sessions stay loaded once and are shared
by every worker, and ONNX Runtime releases the GIL during inference.

KNOWN LIMITATION:
-----------------
``run_with_timeout`` stops WAITING when the budget runs out; it cannot stop
the computation. ONNX Runtime has no cooperative cancellation, so a timed
out detection keeps its worker thread busy until the model call returns.
Its result is discarded. Size ``FACE_WORKERS`` with that in mind.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

from .config import Config
from .errors import DetectionTimeout

logger = logging.getLogger(__name__)


class InferencePool:
    """Bounded thread pools for detection, embedding and gallery work."""

    def __init__(
        self,
        detection_workers: int = Config.MAX_WORKERS,
        embedding_workers: int = Config.EMBED_WORKERS,
        gallery_workers: int = Config.GALLERY_WORKERS,
    ):
        self.detection = ThreadPoolExecutor(max_workers=detection_workers, thread_name_prefix="face-detect")
        self.embedding = ThreadPoolExecutor(max_workers=embedding_workers, thread_name_prefix="face-embed")
        self.gallery = ThreadPoolExecutor(max_workers=gallery_workers, thread_name_prefix="face-gallery")
        self._closed = False

    def submit_detection(self, fn: Callable, *args, **kwargs) -> Future:
        return self.detection.submit(fn, *args, **kwargs)

    def submit_embedding(self, fn: Callable, *args, **kwargs) -> Future:
        return self.embedding.submit(fn, *args, **kwargs)

    def submit_gallery(self, fn: Callable, *args, **kwargs) -> Future:
        return self.gallery.submit(fn, *args, **kwargs)

    def run_with_timeout(self, fn: Callable, timeout: Optional[float], *args, **kwargs):
        """
        Run ``fn`` on the detection pool and wait at most ``timeout`` seconds.

        Raises:
            DetectionTimeout: The budget ran out (the task itself keeps running)
        """
        future = self.detection.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            # Drops the task if it has not started yet; a running one cannot be stopped
            future.cancel()
            logger.warning(f"Detection exceeded {timeout}s budget; result will be discarded")
            raise DetectionTimeout(f"Detection did not finish within {timeout}s") from None

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self, wait: bool = True):
        if self._closed:
            return
        self._closed = True
        self.gallery.shutdown(wait=wait)
        self.embedding.shutdown(wait=wait)
        self.detection.shutdown(wait=wait)


# Shared pool for the process
_pool: Optional[InferencePool] = None
_pool_lock = threading.Lock()


def get_pool() -> InferencePool:
    """Get or create the process-wide inference pool."""
    global _pool
    if _pool is None or _pool.closed:
        with _pool_lock:
            # Double-check locking pattern
            if _pool is None or _pool.closed:
                _pool = InferencePool()
    return _pool
