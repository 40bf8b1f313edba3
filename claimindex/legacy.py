"""Provider records synthesized from claims held by older claim services."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import SplitResult, quote, urlsplit

import cbor2

from claimindex.model import AddrInfo, KeyNotFoundError, ProviderResult
from claimindex.providerindex import (
    EQUALS_CLAIM_ID,
    INDEX_CLAIM_ID,
    LOCATION_COMMITMENT_ID,
    Metadata,
    encode_context_id,
)

PROVIDER_ID = "12D3KooWLrikEsjt5wz326bRhCyEThRhJ936o13c5Ej7ttLbkxgp"
"""Peer ID used in synthesized provider results."""

LOCATION_ABILITY = "assert/location"
INDEX_ABILITY = "assert/index"
EQUALS_ABILITY = "assert/equals"

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

_log = logging.getLogger("claimindex.legacy")


class IgnoreFilteredError(Exception):
    """Raised when a claim's type is not among the target claims."""

    def __init__(self) -> None:
        super().__init__("claim type is not in list of target claims")


@dataclass
class Claim:
    """A signed claim: its capabilities and optional expiry (Unix seconds).

    Each capability is a mapping with at least ``can`` and ``nb`` keys.
    """

    capabilities: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    expiration: int | None = None


class _ContentToClaimsMapper(Protocol):
    async def get_claims(self, content_hash: bytes) -> list[bytes]: ...


class _ClaimFetcher(Protocol):
    async def find(self, claim_cid: bytes) -> Claim: ...


def _base58(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(_B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\0"))
    return "1" * pad + "".join(reversed(digits))


def _format_digest(digest: bytes) -> str:
    return "z" + _base58(digest)


def _multiaddr(parts: SplitResult) -> str:
    scheme = parts.scheme
    if scheme not in ("http", "https"):
        raise ValueError(f"unsupported URL scheme: {scheme!r}")
    host = parts.hostname
    if not host:
        raise ValueError("URL has no host")
    try:
        proto = "ip4" if ipaddress.ip_address(host).version == 4 else "ip6"
    except ValueError:
        proto = "dns"
    port = parts.port
    if port is None:
        port = 443 if scheme == "https" else 80
    addr = f"/{proto}/{host}/tcp/{port}/{scheme}"
    if parts.path:
        addr += "/http-path/" + quote(parts.path, safe="")
    return addr


def _require_bytes(nb: Mapping[str, Any], key: str) -> bytes:
    value = nb.get(key)
    if not isinstance(value, (bytes, bytearray)) or not value:
        raise ValueError(f"caveat {key!r} must be non-empty bytes")
    return bytes(value)


def _caveats(capability: Mapping[str, Any]) -> Mapping[str, Any]:
    nb = capability.get("nb")
    if not isinstance(nb, Mapping):
        raise ValueError("capability has no caveats")
    return nb


class ClaimsStore:
    """Finds claims through content-to-claims mappers and a claim fetcher.

    Mappers are consulted in order; the first that yields relevant claims wins.
    """

    def __init__(
        self,
        mappers: Sequence[_ContentToClaimsMapper],
        claims_store: _ClaimFetcher,
        claims_url: str,
        log: logging.Logger | None = None,
    ) -> None:
        self._mappers = list(mappers)
        self._claims_store = claims_store
        self._claims_addr = _multiaddr(urlsplit(claims_url))
        self._log = log or _log

    async def find(
        self, content_hash: bytes, target_claims: Sequence[int]
    ) -> list[ProviderResult]:
        """Return records from the first mapper that yields relevant claims."""
        for mapper in self._mappers:
            results = await self._find_in_mapper(content_hash, target_claims, mapper)
            if results:
                return results
        return []

    async def _find_in_mapper(
        self,
        content_hash: bytes,
        target_claims: Sequence[int],
        mapper: _ContentToClaimsMapper,
    ) -> list[ProviderResult]:
        try:
            claim_cids = await mapper.get_claims(content_hash)
        except KeyNotFoundError:
            return []

        results = []
        for claim_cid in claim_cids:
            try:
                claim = await self._claims_store.find(claim_cid)
            except KeyNotFoundError:
                continue
            try:
                results.append(
                    self.synthesize_provider_result(claim_cid, claim, target_claims)
                )
            except IgnoreFilteredError:
                continue
            except Exception as err:
                self._log.warning(
                    "error synthesizing provider result for claim %s: %s",
                    claim_cid.hex(),
                    err,
                )
        return results

    def synthesize_provider_result(
        self, claim_cid: bytes, claim: Claim, target_claims: Sequence[int]
    ) -> ProviderResult:
        """Build a provider record, with metadata, for a single-capability claim."""
        expiration = claim.expiration or 0
        if len(claim.capabilities) != 1:
            raise ValueError(
                f"claim {claim_cid.hex()} has an unexpected number of "
                f"capabilities ({len(claim.capabilities)})"
            )
        capability = claim.capabilities[0]
        ability = capability.get("can")
        if ability == LOCATION_ABILITY:
            if LOCATION_COMMITMENT_ID not in target_claims:
                raise IgnoreFilteredError()
            return self._location_result(_caveats(capability), claim_cid, expiration)
        if ability == INDEX_ABILITY:
            if INDEX_CLAIM_ID not in target_claims:
                raise IgnoreFilteredError()
            return self._index_result(_caveats(capability), claim_cid, expiration)
        if ability == EQUALS_ABILITY:
            if EQUALS_CLAIM_ID not in target_claims:
                raise IgnoreFilteredError()
            return self._equals_result(_caveats(capability), claim_cid, expiration)
        raise ValueError(f"unsupported capability: {ability}")

    def _location_result(
        self, nb: Mapping[str, Any], claim_cid: bytes, expiration: int
    ) -> ProviderResult:
        content = _require_bytes(nb, "content")
        locations = nb.get("location")
        if not isinstance(locations, Sequence) or isinstance(locations, (str, bytes)):
            raise ValueError("caveat 'location' must be a list of URLs")
        space = nb.get("space") or None
        context_id = encode_context_id(content, space)

        payload: dict[str, Any] = {"expiration": expiration, "claim": claim_cid}
        rng = nb.get("range")
        if rng is not None:
            payload["range"] = {"offset": rng["offset"], "length": rng.get("length")}
        metadata = Metadata(((LOCATION_COMMITMENT_ID, cbor2.dumps(payload)),))

        formatted = _format_digest(content)
        addrs = []
        for location in locations:
            parts = urlsplit(location)
            # Replace the digest with a placeholder so fetch URLs can be rebuilt.
            parts = parts._replace(path=parts.path.replace(formatted, "{blob}"))
            addrs.append(_multiaddr(parts))
        addrs.append(self._claims_addr)

        return ProviderResult(
            context_id=context_id,
            metadata=metadata.to_bytes(),
            provider=AddrInfo(id=PROVIDER_ID, addrs=tuple(addrs)),
        )

    def _index_result(
        self, nb: Mapping[str, Any], claim_cid: bytes, expiration: int
    ) -> ProviderResult:
        index_cid = _require_bytes(nb, "index")
        payload = {"index": index_cid, "expiration": expiration, "claim": claim_cid}
        metadata = Metadata(((INDEX_CLAIM_ID, cbor2.dumps(payload)),))
        return ProviderResult(
            context_id=index_cid,
            metadata=metadata.to_bytes(),
            provider=AddrInfo(id=PROVIDER_ID, addrs=(self._claims_addr,)),
        )

    def _equals_result(
        self, nb: Mapping[str, Any], claim_cid: bytes, expiration: int
    ) -> ProviderResult:
        content = _require_bytes(nb, "content")
        equals_cid = _require_bytes(nb, "equals")
        payload = {"equals": equals_cid, "expiration": expiration, "claim": claim_cid}
        metadata = Metadata(((EQUALS_CLAIM_ID, cbor2.dumps(payload)),))
        return ProviderResult(
            context_id=content,
            metadata=metadata.to_bytes(),
            provider=AddrInfo(id=PROVIDER_ID, addrs=(self._claims_addr,)),
        )


class NoResultsClaimsFinder:
    """A claims finder for when no older claim system is used."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or _log

    async def find(
        self, content_hash: bytes, target_claims: Sequence[int]
    ) -> list[ProviderResult]:
        """Return a fresh empty list: there is no older system to consult."""
        self._log.debug(
            "skipping legacy lookup for %s (%d target claims)",
            _format_digest(content_hash),
            len(target_claims),
        )
        results: list[ProviderResult] = []
        return results