"""
Bounded worker pool for bulk detail fetches.

A fixed number of workers drain one shared queue. Results are appended to
a live sequence the caller can read while the job is still running.
"""
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

logger = logging.getLogger("pool")

DEFAULT_CONCURRENCY = 5

R = TypeVar("R")
T = TypeVar("T")


class LiveResults(Generic[T]):
    """
    Append-only result sequence shared between workers and a reader.

    Appends take a short lock and never wait for readers. Iterating blocks
    for new items until the sequence is closed.
    """

    def __init__(self):
        self._items: List[T] = []
        self._closed = False
        self._cond = threading.Condition()

    def append(self, item: T) -> None:
        with self._cond:
            self._items.append(item)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def snapshot(self) -> List[T]:
        """Copy of everything appended so far."""
        with self._cond:
            return list(self._items)

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        index = 0
        while True:
            with self._cond:
                while index >= len(self._items) and not self._closed:
                    self._cond.wait()
                if index >= len(self._items):
                    return
                item = self._items[index]
            index += 1
            yield item


class FilterJob(Generic[R, T]):
    """
    One pool invocation: pending references, results and failures.
    """

    def __init__(self, resources: Iterable[R], concurrency: int):
        self.pending: "queue.Queue[R]" = queue.Queue()
        for resource in resources:
            self.pending.put(resource)
        self.total = self.pending.qsize()
        self.concurrency = concurrency
        self.results: LiveResults[T] = LiveResults()
        self.failures: List[Tuple[R, BaseException]] = []
        self._failures_lock = threading.Lock()
        self._active_workers = concurrency
        self._workers_lock = threading.Lock()
        self._done = threading.Event()

    def next_item(self) -> Optional[R]:
        """Dequeue the next reference, or None when the queue is drained."""
        try:
            return self.pending.get_nowait()
        except queue.Empty:
            return None

    def record_failure(self, resource: R, error: BaseException) -> None:
        with self._failures_lock:
            self.failures.append((resource, error))

    def worker_finished(self) -> None:
        with self._workers_lock:
            self._active_workers -= 1
            last = self._active_workers == 0
        if last:
            self.results.close()
            self._done.set()

    def cancel(self) -> int:
        """
        Drop every reference not yet taken by a worker.

        In-flight items still complete. Returns the number dropped.
        """
        dropped = 0
        while self.next_item() is not None:
            dropped += 1
        if dropped:
            logger.info(f"Filter job cancelled, {dropped} items dropped")
        return dropped

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every worker has finished. Returns False on timeout."""
        return self._done.wait(timeout)

    def __iter__(self) -> Iterator[T]:
        return iter(self.results)


class WorkerPool:
    """
    Runs fetch_one over many references with at most `concurrency` in flight.

    Usage:
        job = WorkerPool(concurrency=5).run(refs, fetch_detail)
        for record in job:  # yields as workers complete
            ...
    """

    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency

    def run(self, resources: Iterable[R], fetch_one: Callable[[R], T]) -> FilterJob:
        """Start the workers and return immediately."""
        job: FilterJob = FilterJob(resources, self.concurrency)
        logger.info(f"Starting {self.concurrency} workers for {job.total} items")

        executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="filter-worker",
        )
        for _ in range(self.concurrency):
            future = executor.submit(self._worker, job, fetch_one)
            future.add_done_callback(lambda _f: job.worker_finished())
        executor.shutdown(wait=False)
        return job

    @staticmethod
    def _worker(job: FilterJob, fetch_one: Callable[[Any], Any]) -> None:
        while True:
            resource = job.next_item()
            if resource is None:
                return
            try:
                record = fetch_one(resource)
            except Exception as e:
                logger.warning(f"Failed to fetch details for {_describe(resource)}: {e}")
                job.record_failure(resource, e)
                continue
            job.results.append(record)


def _describe(resource: Any) -> str:
    return getattr(resource, "name", None) or str(resource)
