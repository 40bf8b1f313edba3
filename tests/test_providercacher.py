import asyncio
import os

import pytest

from claimindex.model import (
    AddrInfo,
    KeyNotFoundError,
    Position,
    ProviderResult,
    ShardedDagIndex,
)
from claimindex.providercacher import (
    CachingQueuePoller,
    JobHandler,
    JobWithID,
    ProviderCachingJob,
    SimpleProviderCacher,
)


def random_digest() -> bytes:
    return bytes([0x12, 0x20]) + os.urandom(32)


def random_provider_result() -> ProviderResult:
    return ProviderResult(
        context_id=os.urandom(8),
        metadata=os.urandom(16),
        provider=AddrInfo(
            id=os.urandom(8).hex(), addrs=("/dns4/example.com/tcp/443/https",)
        ),
    )


class MemoryBatch:
    def __init__(self, store):
        self._store = store
        self._commands = []

    async def add(self, key, *values):
        self._commands.append(("add", key, values))

    async def set_expirable(self, key, expires):
        self._commands.append(("expire", key, expires))

    async def commit(self):
        for op, key, payload in self._commands:
            if op == "add":
                await self._store.add(key, *payload)
            else:
                await self._store.set_expirable(key, payload)
        self._store.commits += 1


class MemoryProviderStore:
    def __init__(self, initial=None):
        self.store = {k: list(v) for k, v in (initial or {}).items()}
        self.expirable = {}
        self.commits = 0

    async def members(self, digest):
        if digest not in self.store:
            raise KeyNotFoundError(digest)
        return self.store[digest]

    async def add(self, digest, *providers):
        existing = self.store.setdefault(digest, [])
        written = 0
        for provider in providers:
            if provider not in existing:
                existing.append(provider)
                written += 1
        return written

    async def set_expirable(self, digest, expires):
        self.expirable[digest] = expires

    def batch(self):
        return MemoryBatch(self)


@pytest.fixture
def index_setup():
    root = random_digest()
    index = ShardedDagIndex(root)
    shards = [random_digest() for _ in range(2)]
    slices = [random_digest() for _ in range(6)]
    for i in range(2):
        for j in range(3):
            index.set_slice(shards[i], slices[i * 3 + j], Position())
    index.set_slice(shards[0], root, Position())
    return index, slices


@pytest.mark.asyncio
async def test_cache_new_provider(index_setup):
    index, slices = index_setup
    provider = random_provider_result()
    store = MemoryProviderStore()
    await SimpleProviderCacher(store).cache_provider_for_index_records(provider, index)
    assert len(store.store) == 7
    for digest in slices:
        assert store.store[digest] == [provider]
    assert store.store[index.content] == [provider]
    assert all(store.expirable[d] is True for d in store.store)


@pytest.mark.asyncio
async def test_cache_provider_already_present(index_setup):
    index, slices = index_setup
    provider = random_provider_result()
    evens = {d: [provider] for i, d in enumerate(slices) if i % 2 == 0}
    store = MemoryProviderStore(evens)
    await SimpleProviderCacher(store).cache_provider_for_index_records(provider, index)
    assert len(store.store) == 7
    for digest in slices:
        assert store.store[digest] == [provider]


@pytest.mark.asyncio
async def test_cache_another_provider_on_top(index_setup):
    index, slices = index_setup
    provider, provider2 = random_provider_result(), random_provider_result()
    evens = {d: [provider] for i, d in enumerate(slices) if i % 2 == 0}
    store = MemoryProviderStore(evens)
    await SimpleProviderCacher(store).cache_provider_for_index_records(provider2, index)
    assert len(store.store) == 7
    for i, digest in enumerate(slices):
        expected = [provider, provider2] if i % 2 == 0 else [provider2]
        assert store.store[digest] == expected


@pytest.mark.asyncio
async def test_ten_thousand_item_directory():
    provider = random_provider_result()
    root = random_digest()
    index = ShardedDagIndex(root)
    shards = [random_digest() for _ in range(2)]
    digests = set()
    while len(digests) < 10_000:
        digests.add(random_digest())
    ordered = list(digests)
    for i in range(2):
        for j in range(5_000):
            index.set_slice(shards[i], ordered[i * 5_000 + j], Position())
    index.set_slice(shards[0], root, Position())

    store = MemoryProviderStore()
    await SimpleProviderCacher(store).cache_provider_for_index_records(provider, index)
    assert len(store.store) == 10_001
    assert all(v == [provider] for v in store.store.values())
    assert store.commits >= 2


@pytest.mark.asyncio
async def test_index_without_root_is_rejected():
    store = MemoryProviderStore()
    with pytest.raises(ValueError):
        await SimpleProviderCacher(store).cache_provider_for_index_records(
            random_provider_result(), ShardedDagIndex()
        )
    assert store.store == {}


@pytest.mark.asyncio
async def test_batch_errors_propagate(index_setup):
    index, _ = index_setup

    class FailingBatch(MemoryBatch):
        async def add(self, key, *values):
            raise RuntimeError("batch broken")

    class FailingStore(MemoryProviderStore):
        def batch(self):
            return FailingBatch(self)

    store = FailingStore()
    with pytest.raises(RuntimeError, match="batch broken"):
        await SimpleProviderCacher(store).cache_provider_for_index_records(
            random_provider_result(), index
        )
    assert store.commits == 0


class RecordingCacher:
    def __init__(self, failures=None, on_call=None):
        self.calls = []
        self._failures = failures or {}
        self._on_call = on_call

    async def cache_provider_for_index_records(self, provider, index):
        self.calls.append((provider, index))
        if self._on_call:
            self._on_call()
        error = self._failures.get(provider.provider.id)
        if error is not None:
            raise error


class ScriptedQueue:
    def __init__(self, batches, block_when_empty=True):
        self._batches = list(batches)
        self._block = block_when_empty
        self.reads = []
        self.deleted = []
        self.released = []

    async def read(self, max_jobs):
        self.reads.append(max_jobs)
        if self._batches:
            return self._batches.pop(0)
        if self._block:
            await asyncio.Event().wait()
        return []

    async def delete(self, job_id):
        self.deleted.append(job_id)

    async def release(self, job_id):
        self.released.append(job_id)


def make_job(job_id, peer):
    return JobWithID(
        id=job_id,
        job=ProviderCachingJob(
            provider=ProviderResult(provider=AddrInfo(id=peer)),
            index=ShardedDagIndex(),
        ),
    )


@pytest.mark.asyncio
async def test_job_handler_passes_job_to_cacher():
    cacher = RecordingCacher(failures={"bad-peer": RuntimeError("processing error")})
    handler = JobHandler(cacher)
    good = make_job("a", "good-peer").job
    await handler.handle(good)
    assert cacher.calls == [(good.provider, good.index)]
    with pytest.raises(RuntimeError, match="processing error"):
        await handler.handle(make_job("b", "bad-peer").job)


def test_poller_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        CachingQueuePoller(ScriptedQueue([]), RecordingCacher(), job_batch_size=0)


@pytest.mark.asyncio
async def test_poller_start_stop():
    queue = ScriptedQueue([], block_when_empty=False)
    cacher = RecordingCacher()
    poller = CachingQueuePoller(queue, cacher, idle_interval=0.001)
    poller.start()
    await asyncio.sleep(0.02)
    await poller.stop()
    reads_after_stop = len(queue.reads)
    await asyncio.sleep(0.01)
    assert reads_after_stop >= 1
    assert len(queue.reads) == reads_after_stop
    assert cacher.calls == []


@pytest.mark.asyncio
async def test_poller_batch_processing():
    num_jobs, batch_size = 11, 2
    job = make_job("test-job", "test-peer")
    batch = [job] * batch_size
    batches = [batch] * (num_jobs // batch_size) + [batch[: num_jobs % batch_size]]
    queue = ScriptedQueue(batches)
    done = asyncio.Event()
    cacher = RecordingCacher()
    cacher._on_call = lambda: done.set() if len(cacher.calls) == num_jobs else None

    poller = CachingQueuePoller(queue, cacher, job_batch_size=batch_size)
    poller.start()
    await asyncio.wait_for(done.wait(), 2)
    await asyncio.sleep(0.01)
    await poller.stop()

    assert len(cacher.calls) == num_jobs
    assert all(call == (job.job.provider, job.job.index) for call in cacher.calls)
    assert queue.deleted == ["test-job"] * num_jobs
    assert queue.released == []
    assert queue.reads[:6] == [batch_size] * 6


@pytest.mark.asyncio
async def test_poller_failed_jobs_are_released():
    successful = make_job("successful-job", "successful-peer")
    failed = make_job("failed-job", "failed-peer")
    queue = ScriptedQueue([[successful, failed]])
    cacher = RecordingCacher(failures={"failed-peer": RuntimeError("processing error")})
    poller = CachingQueuePoller(queue, cacher)
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()
    assert queue.deleted == ["successful-job"]
    assert queue.released == ["failed-job"]


@pytest.mark.asyncio
async def test_poller_timed_out_jobs_are_not_retried():
    big = make_job("big-job", "peer")
    queue = ScriptedQueue([[big]])
    cacher = RecordingCacher(failures={"peer": TimeoutError()})
    poller = CachingQueuePoller(queue, cacher)
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()
    assert queue.deleted == ["big-job"]
    assert queue.released == []