"""Shared data types and store interfaces for the provider index."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Protocol


class KeyNotFoundError(LookupError):
    """Raised by a store when a key has no entry."""


class AlreadyAdvertisedError(Exception):
    """Raised by a publisher when an advertisement was already published."""


@dataclass(frozen=True)
class AddrInfo:
    """A peer identity together with the addresses it can be reached at."""

    id: str
    addrs: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderResult:
    """One provider record for a multihash."""

    context_id: bytes = b""
    metadata: bytes = b""
    provider: AddrInfo | None = None


@dataclass
class MultihashResult:
    """The provider records found for one multihash."""

    multihash: bytes
    provider_results: list[ProviderResult] = field(default_factory=list)


@dataclass
class FindResponse:
    """The response of an indexer find query."""

    multihash_results: list[MultihashResult] = field(default_factory=list)


@dataclass(frozen=True)
class Position:
    """Byte range of a slice within its shard."""

    offset: int = 0
    length: int = 0


@dataclass
class ShardedDagIndex:
    """Maps shards to the slices (block digests) they contain.

    ``content`` is the multihash of the DAG root.
    """

    content: bytes | None = None
    shards: dict[bytes, dict[bytes, Position]] = field(default_factory=dict)

    def set_slice(self, shard: bytes, digest: bytes, position: Position) -> None:
        """Record that ``digest`` lives in ``shard`` at ``position``."""
        self.shards.setdefault(shard, {})[digest] = position

    def iter_digests(self) -> Iterator[bytes]:
        """Yield every slice digest, shard by shard, in insertion order."""
        for slices in self.shards.values():
            yield from slices


@dataclass
class QueryKey:
    """What to look up: a digest, optional spaces and the claim types wanted."""

    digest: bytes
    spaces: list[str] = field(default_factory=list)
    target_claims: list[int] = field(default_factory=list)


class _ValueSetBatch(Protocol):
    async def add(self, key: bytes, *values: ProviderResult) -> None: ...

    async def set_expirable(self, key: bytes, expires: bool) -> None: ...

    async def commit(self) -> None: ...


class ProviderStore(Protocol):
    """A cache of provider records keyed by multihash."""

    async def members(self, digest: bytes) -> list[ProviderResult]:
        """Return the cached records; raise KeyNotFoundError if there are none."""
        ...

    async def add(self, digest: bytes, *providers: ProviderResult) -> int:
        """Add records and return how many were new."""
        ...

    async def set_expirable(self, digest: bytes, expires: bool) -> None: ...

    def batch(self) -> _ValueSetBatch: ...


class NoProviderStore(Protocol):
    """A cache of claim types known to have no providers for a multihash."""

    async def members(self, digest: bytes) -> list[int]: ...

    async def add(self, digest: bytes, *codes: int) -> int: ...

    async def set_expirable(self, digest: bytes, expires: bool) -> None: ...


class ClaimsFinder(Protocol):
    """Read-only access to claims in an older system."""

    async def find(
        self, content_hash: bytes, target_claims: list[int]
    ) -> list[ProviderResult]:
        """Return matching records, or an empty list when nothing is found."""
        ...


class ProviderIndex(Protocol):
    """Read/write access to a provider cache that falls back to the indexer."""

    async def find(self, query: QueryKey) -> list[ProviderResult]: ...

    async def cache(
        self,
        provider: AddrInfo,
        context_id: str,
        digests: Iterable[bytes],
        metadata: object,
    ) -> None: ...

    async def publish(
        self,
        provider: AddrInfo,
        context_id: str,
        digests: Iterable[bytes],
        metadata: object,
    ) -> None: ...