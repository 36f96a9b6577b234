import asyncio
import logging
import time

from .errors import ConfigurationError


logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """
    Per-key backoff that doubles with each consecutive failure, up to a cap.
    """
    def __init__(self, base, maximum):
        self.base = base
        self.maximum = maximum
        self._failures = {}

    def when(self, key):
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base * 2 ** failures, self.maximum)

    def failures(self, key):
        return self._failures.get(key, 0)

    def forget(self, key):
        self._failures.pop(key, None)


class TokenBucket:
    """
    Token bucket that is shared by all keys, returning how long a caller should
    wait for their token.
    """
    def __init__(self, rate, burst, clock = time.monotonic):
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._updated = clock()

    def when(self, key = None):
        now = self._clock()
        self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now
        self._tokens -= 1
        return 0 if self._tokens >= 0 else -self._tokens / self.rate

    def forget(self, key):
        pass


class MaxOfRateLimiter:
    """
    Rate limiter that waits for the longest delay of a set of limiters.
    """
    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, key):
        return max(limiter.when(key) for limiter in self.limiters)

    def forget(self, key):
        for limiter in self.limiters:
            limiter.forget(key)


class WorkQueue:
    """
    Queue of keys that are processed by a pool of workers.

    A key is queued at most once, and a key is never processed by two workers at the
    same time. Keys that are added while they are being processed are queued again
    when processing finishes.
    """
    def __init__(self, handler, rate_limiter, workers = 1):
        #: Async callable that processes a key, returning a number of seconds after
        #: which to process the key again, or None
        self._handler = handler
        self._rate_limiter = rate_limiter
        self._num_workers = workers
        self._queue = asyncio.Queue()
        self._dirty = set()
        self._processing = set()
        self._waiting = {}
        self._workers = []

    @classmethod
    def from_config(cls, handler, config):
        """
        Returns a queue using the given queue configuration.
        """
        return cls(
            handler,
            MaxOfRateLimiter(
                ExponentialBackoff(config.backoff_base, config.backoff_max),
                TokenBucket(config.bucket_rate, config.bucket_burst)
            ),
            workers = config.workers
        )

    def __len__(self):
        return self._queue.qsize()

    def is_processing(self, key):
        return key in self._processing

    def add(self, key):
        """
        Adds the key to the queue, unless it is already queued.
        """
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def _add_waiting(self, key):
        self._waiting.pop(key, None)
        self.add(key)

    def add_after(self, key, delay):
        """
        Adds the key to the queue after the given number of seconds.

        If the key is already waiting to be added, the earliest time wins.
        """
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay
        existing = self._waiting.get(key)
        if existing:
            if existing.when() <= ready_at:
                return
            existing.cancel()
        self._waiting[key] = loop.call_at(ready_at, self._add_waiting, key)

    def add_rate_limited(self, key):
        """
        Adds the key to the queue after the delay given by the rate limiter.
        """
        delay = self._rate_limiter.when(key)
        logger.debug("requeuing %s in %.1fs", key, delay)
        self.add_after(key, delay)

    def forget(self, key):
        """
        Clears the failure history of the key.
        """
        self._rate_limiter.forget(key)

    async def _get(self):
        key = await self._queue.get()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def _done(self, key):
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    async def process_next(self):
        """
        Processes the next key in the queue, waiting for one if required.
        """
        key = await self._get()
        try:
            requeue_after = await self._handler(key)
        except ConfigurationError as exc:
            # Retrying will not help until the configuration changes
            logger.warning("workload %s is misconfigured: %s", key, exc)
            self.forget(key)
        except Exception:
            logger.exception("error processing %s", key)
            self.add_rate_limited(key)
        else:
            self.forget(key)
            if requeue_after:
                self.add_after(key, requeue_after)
        finally:
            self._done(key)

    async def _worker(self):
        while True:
            await self.process_next()

    def start(self):
        """
        Starts the workers.
        """
        self._workers = [
            asyncio.create_task(self._worker())
            for _ in range(self._num_workers)
        ]

    async def stop(self):
        """
        Stops the workers and discards any keys that are waiting to be added.
        """
        for handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions = True)
        self._workers = []
