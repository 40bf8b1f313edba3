import os

from claimindex.model import (
    AddrInfo,
    Position,
    ProviderResult,
    QueryKey,
    ShardedDagIndex,
)


def random_digest() -> bytes:
    return bytes([0x12, 0x20]) + os.urandom(32)


def test_set_slice_groups_digests_by_shard():
    index = ShardedDagIndex(random_digest())
    shard_a, shard_b = random_digest(), random_digest()
    d1, d2, d3 = random_digest(), random_digest(), random_digest()
    p1, p2, p3 = Position(1, 2), Position(3, 4), Position(5, 6)
    index.set_slice(shard_a, d1, p1)
    index.set_slice(shard_b, d2, p2)
    index.set_slice(shard_a, d3, p3)
    assert index.shards == {shard_a: {d1: p1, d3: p3}, shard_b: {d2: p2}}


def test_iter_digests_walks_shards_in_insertion_order():
    index = ShardedDagIndex(random_digest())
    shard_a, shard_b = random_digest(), random_digest()
    d1, d2, d3 = random_digest(), random_digest(), random_digest()
    index.set_slice(shard_a, d1, Position())
    index.set_slice(shard_b, d2, Position())
    index.set_slice(shard_a, d3, Position())
    assert list(index.iter_digests()) == [d1, d3, d2]


def test_set_slice_overwrites_existing_position():
    index = ShardedDagIndex(random_digest())
    shard, digest = random_digest(), random_digest()
    index.set_slice(shard, digest, Position(10, 20))
    index.set_slice(shard, digest, Position(30, 40))
    assert index.shards[shard][digest] == Position(30, 40)
    assert list(index.iter_digests()) == [digest]


def test_empty_index_has_no_digests():
    assert list(ShardedDagIndex().iter_digests()) == []


def test_provider_results_compare_by_value():
    provider = AddrInfo(id="peer", addrs=("/dns4/example.com/tcp/443/https",))
    first = ProviderResult(b"ctx", b"meta", provider)
    second = ProviderResult(b"ctx", b"meta", AddrInfo("peer", provider.addrs))
    assert first == second
    assert len({first, second}) == 1
    assert first != ProviderResult(b"other", b"meta", provider)


def test_query_key_defaults_are_independent():
    first = QueryKey(random_digest())
    second = QueryKey(random_digest())
    first.spaces.append("did:key:example")
    first.target_claims.append(1)
    assert second.spaces == []
    assert second.target_claims == []