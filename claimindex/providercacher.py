"""Caching of a provider for every block of an index, and a queue poller for it."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from claimindex.model import ProviderResult, ProviderStore, ShardedDagIndex

MAX_BATCH_SIZE = 10_000
"""Maximum number of entries written in one batch."""

DEFAULT_JOB_BATCH_SIZE = 10

_log = logging.getLogger("claimindex.providercacher")


class _ProviderCacher(Protocol):
    async def cache_provider_for_index_records(
        self, provider: ProviderResult, index: ShardedDagIndex
    ) -> None: ...


@dataclass
class ProviderCachingJob:
    """A request to cache ``provider`` for every block in ``index``."""

    provider: ProviderResult
    index: ShardedDagIndex


@dataclass
class JobWithID:
    """A queued job together with the queue's identifier for it."""

    id: str
    job: ProviderCachingJob


class _CachingQueue(Protocol):
    async def read(self, max_jobs: int) -> list[JobWithID]: ...

    async def delete(self, job_id: str) -> None: ...

    async def release(self, job_id: str) -> None: ...


class SimpleProviderCacher:
    """Writes a provider record for each digest of an index into a provider store."""

    def __init__(self, provider_store: ProviderStore) -> None:
        self._provider_store = provider_store

    async def cache_provider_for_index_records(
        self, provider: ProviderResult, index: ShardedDagIndex
    ) -> None:
        """Cache ``provider`` for the index root first, then every slice."""
        root = index.content
        if root is None:
            raise ValueError("index has no content root")

        batch = self._provider_store.batch()
        await batch.add(root, provider)
        await batch.set_expirable(root, True)

        total = 0
        size = 1
        for digest in index.iter_digests():
            if digest == root:
                continue
            await batch.add(digest, provider)
            await batch.set_expirable(digest, True)
            total += 1
            size += 1
            if size >= MAX_BATCH_SIZE:
                await batch.commit()
                batch = self._provider_store.batch()
                size = 0

        _log.debug("cached provider for %d index records", total)
        if size:
            await batch.commit()


class JobHandler:
    """Runs a caching job against a provider cacher."""

    def __init__(self, provider_cacher: _ProviderCacher) -> None:
        self._provider_cacher = provider_cacher

    async def handle(self, job: ProviderCachingJob) -> None:
        await self._provider_cacher.cache_provider_for_index_records(
            job.provider, job.index
        )


class CachingQueuePoller:
    """Reads caching jobs from a queue and processes each batch concurrently.

    A job that succeeds or times out is deleted from the queue; any other
    failure releases it so that it is retried.
    """

    def __init__(
        self,
        queue: _CachingQueue,
        cacher: _ProviderCacher,
        *,
        job_batch_size: int = DEFAULT_JOB_BATCH_SIZE,
        idle_interval: float = 0.1,
        error_backoff: float = 1.0,
    ) -> None:
        if job_batch_size < 1:
            raise ValueError("job batch size must be at least 1")
        self._queue = queue
        self._handle: Callable[[ProviderCachingJob], Awaitable[None]] = JobHandler(
            cacher
        ).handle
        self._job_batch_size = job_batch_size
        self._idle_interval = idle_interval
        self._error_backoff = error_backoff
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Begin polling on the running event loop."""
        if self._task is not None:
            raise RuntimeError("poller already started")
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop polling and wait for the poll loop to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            try:
                jobs = await self._queue.read(self._job_batch_size)
            except Exception:
                _log.exception("reading jobs from queue")
                await asyncio.sleep(self._error_backoff)
                continue
            if not jobs:
                await asyncio.sleep(self._idle_interval)
                continue
            await asyncio.gather(*(self._process(job) for job in jobs))

    async def _process(self, job: JobWithID) -> None:
        try:
            await self._handle(job.job)
        except TimeoutError:
            _log.warning("job %s timed out, dropping it", job.id)
            await self._settle(self._queue.delete, job.id, "deleting")
        except Exception:
            _log.exception("processing job %s", job.id)
            await self._settle(self._queue.release, job.id, "releasing")
        else:
            await self._settle(self._queue.delete, job.id, "deleting")

    @staticmethod
    async def _settle(
        action: Callable[[str], Awaitable[None]], job_id: str, verb: str
    ) -> None:
        try:
            await action(job_id)
        except Exception:
            _log.exception("%s job %s", verb, job_id)