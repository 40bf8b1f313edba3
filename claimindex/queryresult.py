"""Query results: found claims and indexes packed as content-addressed blocks."""

from __future__ import annotations

import hashlib
from collections.abc import Iterator, Mapping
from typing import Any, BinaryIO, Protocol

import cbor2
from cbor2 import CBORTag

from claimindex.legacy import LOCATION_ABILITY, Claim
from claimindex.model import ShardedDagIndex

_DAG_CBOR = 0x71
_RAW = 0x55
_CAR = 0x0202
_SHA2_256 = 0x12
_CID_TAG = 42

_RESULT_KEY = "index/query/result@0.1"
_INDEX_KEY = "index/sharded/dag@0.1"
_SHARD_KEY = "blob/index@0.1"

Block = tuple[bytes, bytes]


class _Signer(Protocol):
    did: str

    def sign(self, payload: bytes) -> bytes: ...


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def _cid(codec: int, data: bytes) -> bytes:
    multihash = bytes([_SHA2_256, 32]) + hashlib.sha256(data).digest()
    return _encode_varint(1) + _encode_varint(codec) + multihash


def _link(cid: bytes) -> CBORTag:
    return CBORTag(_CID_TAG, b"\x00" + cid)


def _unlink(value: Any) -> bytes:
    if (
        not isinstance(value, CBORTag)
        or value.tag != _CID_TAG
        or not isinstance(value.value, (bytes, bytearray))
        or not value.value
        or value.value[0] != 0
    ):
        raise ValueError("expected a link")
    return bytes(value.value[1:])


def _encode_car(root: bytes, blocks: Iterator[Block] | list[Block]) -> bytes:
    header = cbor2.dumps({"roots": [_link(root)], "version": 1})
    parts = [_encode_varint(len(header)), header]
    for cid, data in blocks:
        parts.append(_encode_varint(len(cid) + len(data)))
        parts.append(cid)
        parts.append(data)
    return b"".join(parts)


def _read_cid(data: bytes, pos: int) -> tuple[bytes, int]:
    if data[pos : pos + 2] == bytes([_SHA2_256, 32]):
        end = pos + 34
    else:
        version, cursor = _read_varint(data, pos)
        if version != 1:
            raise ValueError(f"unsupported CID version {version}")
        _, cursor = _read_varint(data, cursor)
        _, cursor = _read_varint(data, cursor)
        length, cursor = _read_varint(data, cursor)
        end = cursor + length
    if end > len(data):
        raise ValueError("truncated CID")
    return bytes(data[pos:end]), end


def _decode_car(data: bytes) -> tuple[list[bytes], dict[bytes, bytes]]:
    header_len, pos = _read_varint(data, 0)
    if pos + header_len > len(data):
        raise ValueError("truncated CAR header")
    header = cbor2.loads(data[pos : pos + header_len])
    pos += header_len
    if not isinstance(header, dict) or header.get("version") != 1:
        raise ValueError("unsupported CAR header")
    roots = [_unlink(root) for root in header.get("roots") or []]

    blocks: dict[bytes, bytes] = {}
    while pos < len(data):
        length, pos = _read_varint(data, pos)
        end = pos + length
        if end > len(data):
            raise ValueError("truncated CAR section")
        cid, start = _read_cid(data, pos)
        if start > end:
            raise ValueError("CID overruns CAR section")
        blocks[cid] = bytes(data[start:end])
        pos = end
    return roots, blocks


def _archive_index(index: ShardedDagIndex) -> bytes:
    if index.content is None:
        raise ValueError("index has no content root")
    blocks: list[Block] = []
    shard_links = []
    for shard, slices in index.shards.items():
        entries = [[digest, [pos.offset, pos.length]] for digest, pos in slices.items()]
        data = cbor2.dumps({_SHARD_KEY: [shard, entries]})
        cid = _cid(_DAG_CBOR, data)
        blocks.append((cid, data))
        shard_links.append(_link(cid))

    content_cid = _encode_varint(1) + _encode_varint(_RAW) + index.content
    root_data = cbor2.dumps(
        {_INDEX_KEY: {"content": _link(content_cid), "shards": shard_links}}
    )
    root_cid = _cid(_DAG_CBOR, root_data)
    return _encode_car(root_cid, [(root_cid, root_data), *blocks])


def _claim_block(claim: Claim) -> Block:
    body = {
        "att": [dict(capability) for capability in claim.capabilities],
        "exp": claim.expiration,
    }
    data = cbor2.dumps(body, canonical=True)
    return _cid(_DAG_CBOR, data), data


def _signed_claim_block(principal: _Signer, claim: Claim) -> Block:
    body = {
        "iss": principal.did,
        "aud": principal.did,
        "att": [dict(capability) for capability in claim.capabilities],
        "exp": claim.expiration,
    }
    signature = principal.sign(cbor2.dumps(body, canonical=True))
    data = cbor2.dumps({**body, "s": signature}, canonical=True)
    return _cid(_DAG_CBOR, data), data


class QueryResult:
    """Found claims and indexes, with every block needed to read them."""

    def __init__(
        self,
        root: Block,
        claims: list[bytes],
        indexes: dict[bytes, bytes] | None,
        blocks: dict[bytes, bytes],
    ) -> None:
        self._root = root
        self._claims = list(claims)
        self._indexes = dict(indexes) if indexes else {}
        self._blocks = dict(blocks)

    def blocks(self) -> Iterator[Block]:
        """Yield every block as a ``(cid, data)`` pair."""
        yield from self._blocks.items()

    def claims(self) -> list[bytes]:
        """Return the links of the claims."""
        return list(self._claims)

    def indexes(self) -> list[bytes]:
        """Return the links of the index archives, in key order."""
        return list(self._indexes.values())

    def root(self) -> Block:
        """Return the root block."""
        return self._root


def extract(stream: BinaryIO) -> QueryResult:
    """Read a query result from a CAR stream."""
    try:
        roots, blocks = _decode_car(stream.read())
    except (ValueError, cbor2.CBORError) as err:
        raise ValueError(f"extracting car: {err}") from err

    if len(roots) != 1:
        raise ValueError(f"wrong number of roots: {len(roots)}")
    root_cid = roots[0]
    if root_cid not in blocks:
        raise ValueError("root block not found")
    root_data = blocks[root_cid]

    try:
        model = cbor2.loads(root_data)
        body = model[_RESULT_KEY]
        claims = [_unlink(link) for link in body["claims"]]
        raw_indexes = body.get("indexes")
        indexes = (
            {bytes(key): _unlink(link) for key, link in raw_indexes.items()}
            if raw_indexes is not None
            else None
        )
    except (KeyError, TypeError, AttributeError, ValueError, cbor2.CBORError) as err:
        raise ValueError(f"decoding query result: {err}") from err

    return QueryResult((root_cid, root_data), claims, indexes, blocks)


def _build(
    claim_blocks: list[Block], indexes: Mapping[bytes, ShardedDagIndex]
) -> QueryResult:
    blocks: dict[bytes, bytes] = {}
    claim_links = []
    for cid, data in claim_blocks:
        claim_links.append(cid)
        blocks[cid] = data

    index_links: dict[bytes, bytes] | None = None
    if indexes:
        index_links = {}
        for context_id, index in indexes.items():
            archive = _archive_index(index)
            cid = _cid(_CAR, archive)
            blocks[cid] = archive
            index_links[bytes(context_id)] = cid

    body: dict[str, Any] = {"claims": [_link(cid) for cid in claim_links]}
    if index_links is not None:
        body["indexes"] = {key: _link(cid) for key, cid in index_links.items()}
    root_data = cbor2.dumps({_RESULT_KEY: body})
    root_cid = _cid(_DAG_CBOR, root_data)
    blocks[root_cid] = root_data

    return QueryResult((root_cid, root_data), claim_links, index_links, blocks)


def build(
    claims: Mapping[bytes, Claim], indexes: Mapping[bytes, ShardedDagIndex]
) -> QueryResult:
    """Build a query result holding ``claims`` and archives of ``indexes``."""
    return _build([_claim_block(claim) for claim in claims.values()], indexes)


def _location_caveats(claim: Claim) -> Mapping[str, Any] | None:
    if not claim.capabilities:
        return None
    capability = claim.capabilities[0]
    if capability.get("can") != LOCATION_ABILITY:
        return None
    nb = capability.get("nb")
    if not isinstance(nb, Mapping) or not isinstance(nb.get("content"), (bytes, bytearray)):
        return None
    return nb


def build_compressed(
    target: bytes,
    principal: _Signer,
    claims: Mapping[bytes, Claim],
    indexes: Mapping[bytes, ShardedDagIndex],
) -> QueryResult:
    """Build a result that replaces a matching index with one location claim.

    When ``target`` is a slice of an indexed shard that has a location claim,
    the result holds only a new claim, signed by ``principal``, for the byte
    range of ``target``. Otherwise the regular result is built.
    """
    if not indexes:
        return build(claims, indexes)

    for index in indexes.values():
        for shard, slices in index.shards.items():
            position = slices.get(target)
            if position is None:
                continue
            location = None
            expiration = None
            for claim in claims.values():
                nb = _location_caveats(claim)
                if nb is None or bytes(nb["content"]) != shard:
                    continue
                location = nb
                expiration = claim.expiration
            if location is None:
                continue

            offset = position.offset
            shard_range = location.get("range")
            if shard_range is not None:
                offset += shard_range["offset"]
            caveats = {
                "content": target,
                "location": list(location.get("location") or []),
                "range": {"offset": offset, "length": position.length},
            }
            if location.get("space"):
                caveats["space"] = location["space"]
            compressed = Claim(
                capabilities=(
                    {"can": LOCATION_ABILITY, "with": principal.did, "nb": caveats},
                ),
                expiration=expiration,
            )
            return _build([_signed_claim_block(principal, compressed)], {})

    return build(claims, indexes)