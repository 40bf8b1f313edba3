"""Provider lookup backed by a local cache, the network indexer and legacy claims."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from claimindex.model import (
    AddrInfo,
    AlreadyAdvertisedError,
    ClaimsFinder,
    FindResponse,
    KeyNotFoundError,
    NoProviderStore,
    ProviderResult,
    ProviderStore,
    QueryKey,
)

MAX_BATCH_SIZE = 10_000
"""Maximum number of entries written in one batch."""

IPNI_TIMEOUT = 5.0
"""Seconds after which an indexer query is abandoned."""

BITSWAP_ID = 0x0900
LOCATION_COMMITMENT_ID = 0x3E0000
INDEX_CLAIM_ID = 0x3E0001
EQUALS_CLAIM_ID = 0x3E0002


class MetadataError(ValueError):
    """Raised when provider metadata cannot be decoded."""


class ProviderLookupError(Exception):
    """Raised when every source of provider records failed."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("\n".join(errors))
        self.errors = list(errors)


def _encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must not be negative")
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise MetadataError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise MetadataError("varint too long")


@dataclass(frozen=True)
class Metadata:
    """Provider metadata: an ordered set of protocol entries with payloads."""

    entries: tuple[tuple[int, bytes], ...] = ()

    def protocols(self) -> list[int]:
        return [code for code, _ in self.entries]

    def get(self, code: int) -> bytes | None:
        """Return the payload for ``code``, or None if the protocol is absent."""
        for entry_code, payload in self.entries:
            if entry_code == code:
                return payload
        return None

    def to_bytes(self) -> bytes:
        if not self.entries:
            raise MetadataError("metadata must hold at least one protocol")
        return b"".join(
            _encode_varint(code) + _encode_varint(len(payload)) + payload
            for code, payload in self.entries
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Metadata:
        if not data:
            raise MetadataError("metadata must hold at least one protocol")
        entries: list[tuple[int, bytes]] = []
        seen: set[int] = set()
        pos = 0
        while pos < len(data):
            code, pos = _decode_varint(data, pos)
            length, pos = _decode_varint(data, pos)
            if pos + length > len(data):
                raise MetadataError("truncated metadata payload")
            if code in seen:
                raise MetadataError(f"duplicate protocol 0x{code:x}")
            seen.add(code)
            entries.append((code, bytes(data[pos : pos + length])))
            pos += length
        return cls(tuple(entries))


def encode_context_id(digest: bytes, space: str | None = None) -> bytes:
    """Derive the encoded context ID for a digest, optionally scoped to a space."""
    hasher = hashlib.sha256()
    if space is not None:
        hasher.update(space.encode())
        hasher.update(b"\x00")
    hasher.update(digest)
    return hasher.digest()


class _Finder(Protocol):
    async def find(self, digest: bytes) -> FindResponse: ...


class _Publisher(Protocol):
    async def publish(
        self,
        provider: AddrInfo,
        context_id: str | bytes,
        digests: Iterable[bytes],
        metadata: Any,
    ) -> None: ...


def filter_codecs(
    results: list[ProviderResult], codecs: Sequence[int]
) -> list[ProviderResult]:
    """Keep results whose metadata carries any of ``codecs``; all when none given."""
    if not codecs:
        return results
    wanted = set(codecs)
    return [
        result
        for result in results
        if wanted.intersection(Metadata.from_bytes(result.metadata).protocols())
    ]


def _filterable_by_context_id(result: ProviderResult) -> bool:
    try:
        md = Metadata.from_bytes(result.metadata)
    except MetadataError:
        return False
    return md.get(LOCATION_COMMITMENT_ID) is not None


def filter_by_space(
    results: list[ProviderResult], digest: bytes, spaces: Sequence[str]
) -> list[ProviderResult]:
    """Drop location results whose context ID belongs to none of ``spaces``."""
    if not spaces:
        return results
    allowed = {encode_context_id(digest, space) for space in spaces}
    return [
        result
        for result in results
        if not _filterable_by_context_id(result) or result.context_id in allowed
    ]


async def cache_entries(
    log: logging.Logger,
    provider_store: ProviderStore,
    provider: AddrInfo,
    context_id: str | bytes,
    digests: Iterable[bytes],
    metadata: Metadata,
    expire: bool,
) -> int:
    """Write a provider record for every digest in batches; return the count."""
    log.info("caching provider results for context: %s, provider: %s", context_id, provider.id)
    record = ProviderResult(
        context_id=context_id if isinstance(context_id, bytes) else context_id.encode(),
        metadata=metadata.to_bytes(),
        provider=provider,
    )

    batch = provider_store.batch()
    size = 0
    total = 0
    for digest in digests:
        await batch.add(digest, record)
        await batch.set_expirable(digest, expire)
        total += 1
        size += 1
        if size >= MAX_BATCH_SIZE:
            await batch.commit()
            batch = provider_store.batch()
            size = 0
    if size:
        await batch.commit()

    log.info("cached %d provider results for context: %s", total, context_id)
    return total


def _outcome(task: asyncio.Task[list[ProviderResult]]) -> tuple[list[ProviderResult], BaseException | None]:
    if task.cancelled():
        return [], asyncio.CancelledError("query cancelled")
    err = task.exception()
    if err is not None:
        return [], err
    return list(task.result() or []), None


class ProviderIndexService:
    """Finds, caches and publishes provider records."""

    def __init__(
        self,
        provider_store: ProviderStore,
        no_provider_store: NoProviderStore,
        find_client: _Finder,
        publisher: _Publisher,
        legacy_claims: ClaimsFinder,
        *,
        log: logging.Logger | None = None,
        ipni_timeout: float = IPNI_TIMEOUT,
    ) -> None:
        self._provider_store = provider_store
        self._no_provider_store = no_provider_store
        self._find_client = find_client
        self._publisher = publisher
        self._legacy_claims = legacy_claims
        self._log = log or logging.getLogger("claimindex.providerindex")
        self._ipni_timeout = ipni_timeout
        self._publish_lock = asyncio.Lock()

    async def find(self, query: QueryKey) -> list[ProviderResult]:
        """Look up providers for the query's digest and filter them by space."""
        results = await self.get_provider_results(query.digest, query.target_claims)
        return filter_by_space(results, query.digest, query.spaces)

    async def get_provider_results(
        self, digest: bytes, target_claims: Sequence[int]
    ) -> list[ProviderResult]:
        """Return cached records, else query the indexer and legacy claims together."""
        try:
            cached = await self._provider_store.members(digest)
        except KeyNotFoundError:
            pass
        else:
            try:
                cached = filter_codecs(cached, target_claims)
            except MetadataError:
                cached = []
            if cached:
                return cached

        ipni_task = asyncio.create_task(self._fetch_from_ipni(digest, target_claims))
        legacy_task = asyncio.create_task(
            self._legacy_claims.find(digest, list(target_claims))
        )
        pending: set[asyncio.Task[list[ProviderResult]]] = {ipni_task, legacy_task}
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                if ipni_task in done:
                    results, err = _outcome(ipni_task)
                    if err is None and results:
                        legacy_task.cancel()
        finally:
            ipni_task.cancel()
            legacy_task.cancel()

        ipni_results, ipni_err = _outcome(ipni_task)
        legacy_results, legacy_err = _outcome(legacy_task)

        if ipni_err is None and ipni_results:
            await self._cache_results(digest, ipni_results)
            return ipni_results
        if legacy_err is None and legacy_results:
            await self._cache_results(digest, legacy_results)
            return legacy_results

        errors = []
        if ipni_err is not None:
            errors.append(f"fetching from IPNI failed: {ipni_err}")
        if legacy_err is not None:
            errors.append(f"fetching from legacy services failed: {legacy_err}")
        if errors:
            raise ProviderLookupError(errors)
        return []

    async def _cache_results(self, digest: bytes, results: list[ProviderResult]) -> None:
        try:
            added = await self._provider_store.add(digest, *results)
        except Exception as err:
            self._log.error("adding results to set: %s", err)
            return
        if added > 0:
            try:
                await self._provider_store.set_expirable(digest, True)
            except Exception as err:
                self._log.error("setting expirable: %s", err)

    async def _cache_no_provider_results(
        self, digest: bytes, target_claims: Sequence[int]
    ) -> None:
        try:
            added = await self._no_provider_store.add(digest, *target_claims)
        except Exception as err:
            self._log.error("caching no results: %s", err)
            return
        if added > 0:
            try:
                await self._no_provider_store.set_expirable(digest, True)
            except Exception as err:
                self._log.error("setting no results expirable: %s", err)

    async def _fetch_from_ipni(
        self, digest: bytes, target_claims: Sequence[int]
    ) -> list[ProviderResult]:
        try:
            known_missing = await self._no_provider_store.members(digest)
        except KeyNotFoundError:
            pass
        else:
            if all(code in known_missing for code in target_claims):
                return []

        results: list[ProviderResult] = []
        try:
            async with asyncio.timeout(self._ipni_timeout):
                response = await self._find_client.find(digest)
        except Exception as err:
            self._log.warning("finding %s in IPNI: %s", digest.hex(), err)
        else:
            results = [
                record
                for mh_result in response.multihash_results
                for record in mh_result.provider_results
            ]
            try:
                results = filter_codecs(results, target_claims)
            except MetadataError as err:
                raise MetadataError(f"filtering codecs: {err}") from err

        if not results:
            await self._cache_no_provider_results(digest, target_claims)
        return results

    async def cache(
        self,
        provider: AddrInfo,
        context_id: str | bytes,
        digests: Iterable[bytes],
        metadata: Metadata,
    ) -> None:
        """Cache records that expire, without publishing an advertisement."""
        await cache_entries(
            self._log, self._provider_store, provider, context_id, digests, metadata, True
        )

    async def publish(
        self,
        provider: AddrInfo,
        context_id: str | bytes,
        digests: Iterable[bytes],
        metadata: Metadata,
    ) -> None:
        """Cache records without expiry, then publish an advertisement for them."""
        digest_list = list(digests)
        await cache_entries(
            self._log,
            self._provider_store,
            provider,
            context_id,
            digest_list,
            metadata,
            False,
        )
        async with self._publish_lock:
            try:
                await self._publisher.publish(provider, context_id, digest_list, metadata)
            except AlreadyAdvertisedError:
                self._log.warning("Skipping previously published advert")