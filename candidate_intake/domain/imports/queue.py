"""
In-process job sequencer.

Upload jobs are handed to a small pool of worker threads that drain a FIFO
queue. With the default single worker, jobs run strictly one after another in
submission order.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class IngestionTask:
    """Everything a worker needs to run one upload job."""
    job_id: str
    storage_path: str
    mapping: Dict[str, Optional[str]]


_STOP = object()


class IngestionQueue:
    """FIFO queue of ingestion tasks consumed by background worker threads."""

    def __init__(self, runner: Callable[[IngestionTask], Any], max_workers: int = 1, name: str = "ingestion"):
        self._runner = runner
        self._max_workers = max(1, max_workers)
        self._name = name
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._queued: Set[str] = set()
        self._active: Set[str] = set()
        self._running = False

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queued)

    @property
    def active_job_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            for index in range(self._max_workers):
                worker = threading.Thread(
                    target=self._work,
                    name=f"{self._name}-worker-{index + 1}",
                    daemon=True,
                )
                self._workers.append(worker)
                worker.start()
        logger.info("Ingestion queue started with %d worker(s)", self._max_workers)

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop accepting work and wait for workers to finish their current job."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            workers = list(self._workers)
            self._workers = []
        for _ in workers:
            self._queue.put(_STOP)
        for worker in workers:
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Ingestion worker %s did not stop within %ss", worker.name, timeout)
        logger.info("Ingestion queue stopped (%d job(s) left queued)", self.pending_count)

    def enqueue(self, task: IngestionTask) -> bool:
        """
        Queue a task. Returns False when the queue is stopped or the job is
        already queued or running.
        """
        with self._lock:
            if not self._running:
                logger.warning("Ingestion queue is not running; job %s not queued", task.job_id)
                return False
            if task.job_id in self._queued or task.job_id in self._active:
                logger.info("Job %s is already queued or running; ignoring duplicate", task.job_id)
                return False
            self._queued.add(task.job_id)
        self._queue.put(task)
        logger.info("Queued job %s (%d pending)", task.job_id, self.pending_count)
        return True

    def join(self) -> None:
        """Block until every queued task has been processed."""
        self._queue.join()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "workers": self._max_workers,
                "pending": len(self._queued),
                "active": sorted(self._active),
            }

    def _work(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is _STOP:
                    return
                self._run_task(task)
            finally:
                self._queue.task_done()

    def _run_task(self, task: IngestionTask) -> None:
        with self._lock:
            self._queued.discard(task.job_id)
            self._active.add(task.job_id)
        try:
            self._runner(task)
        except Exception:
            logger.exception("Ingestion job %s raised; continuing with the next job", task.job_id)
        finally:
            with self._lock:
                self._active.discard(task.job_id)
