# claimindex

`claimindex` is the asynchronous lookup core of a content-claims indexing service. It answers one question for a multihash: "who can provide this content?"

To answer it, the package works through these steps:

- It checks a local provider cache first.
- On a miss, it queries an indexer finder and a legacy claims finder side by side.
- It remembers which claim types have no providers.
- It packs the claims and indexes it finds into a CAR-encoded query result.

Stores, finders, queues and publishers are supplied by you as plain objects with async methods. The package defines what those objects must provide.

## Installation

```
pip install claimindex
```

The only runtime dependency is `cbor2`. The `test` extra installs `pytest` and `pytest-asyncio` for the test suite.

## Modules

### `claimindex.model`

This module holds the shared data types.

- `ProviderResult` is a frozen dataclass with three fields:
  - `context_id`, as bytes;
  - `metadata`, as bytes;
  - `provider`, an `AddrInfo` holding an `id` and a tuple of `addrs`.
- `FindResponse` holds a list of `MultihashResult`. Each of those holds a `multihash` and its `provider_results`.
- `ShardedDagIndex` has a `content` root digest and maps shard digests to their slices. Each slice digest maps to a `Position`, which has an `offset` and a `length`.
  - `set_slice(shard, digest, position)` records a slice.
  - `iter_digests()` yields every slice digest, shard by shard, in insertion order.
- `QueryKey` has three fields:
  - `digest`;
  - an optional list of `spaces`;
  - the `target_claims`, a list of integer claim codes.
- `KeyNotFoundError` must be raised by a store when a key has no entry.
- `AlreadyAdvertisedError` must be raised by a publisher when an advert was published before.

The module also defines these protocols:

| Protocol | Methods |
| --- | --- |
| `ProviderStore` | `members`, `add`, `set_expirable`, `batch` |
| `NoProviderStore` | `members`, `add`, `set_expirable` |
| `ClaimsFinder` | `find` |
| `ProviderIndex` | `find`, `cache`, `publish` |

A batch returned by `ProviderStore.batch()` provides `add`, `set_expirable` and `commit`.

### `claimindex.providerindex`

Construct the service with your collaborators:

```python
ProviderIndexService(
    provider_store,
    no_provider_store,
    find_client,
    publisher,
    legacy_claims,
    log=None,
    ipni_timeout=5.0,
)
```

`get_provider_results(digest, target_claims)` looks up providers in this order:

1. **Cache.** It reads the provider cache and keeps only the records whose metadata carries one of the target claim codes. Undecodable metadata counts as no match. A non-empty match is returned at once.
2. **Concurrent queries.** Otherwise it runs the indexer query and `legacy_claims.find` concurrently.
   - If the no-provider store already lists every target claim, the indexer is not asked.
   - The indexer query is abandoned after `ipni_timeout` seconds. A failure there is logged, not raised.
   - When the indexer finds nothing, the target claims are recorded in the no-provider store and set to expire.
   - A non-empty indexer answer cancels the legacy query.
3. **Result.** Indexer results win over legacy results. Whichever is used is added to the provider cache and set to expire.
4. **Nothing found.** If neither source returned anything but at least one failed, a `ProviderLookupError` is raised. It carries one message per failed source in its `errors` list. If nothing failed, an empty list is returned.

`find(query)` runs that lookup and then applies `filter_by_space` with the query's spaces.

Two methods write to the cache:

- `cache(provider, context_id, digests, metadata)` writes one record per digest, with expiry.
- `publish(...)` takes the same arguments. It writes the records without expiry and then passes them to the publisher, one publish at a time. An `AlreadyAdvertisedError` from the publisher is logged and ignored.

Helpers that can be used on their own:

- `cache_entries(log, provider_store, provider, context_id, digests, metadata, expire)` writes records in batches of at most `MAX_BATCH_SIZE` (10,000) and returns how many it wrote.
- `filter_codecs(results, codecs)` keeps results whose metadata names any of the codecs. It returns all results when no codecs are given.
- `filter_by_space(results, digest, spaces)` drops location-commitment results whose context ID does not match any of the spaces. Other results are kept.
- `encode_context_id(digest, space=None)` gives the SHA-256 of the space (when given) followed by a zero byte, then the digest.
- `Metadata` is an ordered set of `(protocol code, payload)` entries. On the wire each entry is a varint code, a varint length and the payload.
  - `to_bytes()` and `from_bytes()` convert it; bad input raises `MetadataError`.
  - `protocols()` lists the codes and `get(code)` returns a payload.

Claim codes are available as constants: `LOCATION_COMMITMENT_ID`, `INDEX_CLAIM_ID`, `EQUALS_CLAIM_ID` and `BITSWAP_ID`.

### `claimindex.providercacher`

`SimpleProviderCacher(provider_store).cache_provider_for_index_records(provider, index)` does the following:

- It adds the provider for the index root first, then for every other slice digest.
- Each entry is marked expirable.
- It commits in batches of at most 10,000 entries.
- An index without a root raises `ValueError`.

`CachingQueuePoller(queue, cacher, job_batch_size=10, idle_interval=0.1, error_backoff=1.0)` works with `ProviderCachingJob` items wrapped in `JobWithID`.

- It reads up to `job_batch_size` jobs at a time from a queue. The queue must provide `read`, `delete` and `release`.
- It runs the jobs of a batch concurrently through `JobHandler`.
- Each job ends in one of three ways:
  - a job that succeeds is deleted;
  - a job that raises `TimeoutError` is deleted, so it is not retried;
  - any other failure releases the job for a retry.
- `start()` must be called inside a running event loop. `await stop()` cancels the loop and waits for it to end.

### `claimindex.remotesyncer`

`RemoteSyncer(provider_store, store).handle_remote_sync(head, prev)` walks a chain of `Advertisement` objects.

- It starts at `head` and stops before `prev`, or at the start of the chain.
- For each advertisement it marks every entry digest as expirable and commits one batch.
- The advert store must provide `advert(link)` and an async iterator `entries(link)`.
- Errors are logged and end the walk; nothing is raised.

### `claimindex.legacy`

`ClaimsStore(mappers, claims_store, claims_url)` turns claims from older services into provider results.

- Each mapper's `get_claims(content_hash)` returns claim CIDs, which are fetched with `claims_store.find(claim_cid)`.
- Mappers are tried in order. The first one that yields relevant results wins.
- Missing keys are skipped. Claims that cannot be turned into results are logged and skipped.

`synthesize_provider_result(claim_cid, claim, target_claims)` handles a `Claim` that has exactly one capability:

- **Location claims** (`assert/location`):
  - The context ID comes from the content digest and the space.
  - The metadata holds the range, the expiry and the claim CID.
  - The addresses are the claim's URLs as multiaddrs, with the content digest in the path replaced by `{blob}`, plus the claims URL.
- **Index claims** (`assert/index`) use the index CID as the context ID.
- **Equals claims** (`assert/equals`) use the content digest as the context ID.

Results carry `PROVIDER_ID` as the peer ID. A claim type not in `target_claims` raises `IgnoreFilteredError`. An unknown ability or a wrong number of capabilities raises `ValueError`.

`claims_url` must be an `http` or `https` URL.

`NoResultsClaimsFinder().find(...)` always returns an empty list.

### `claimindex.queryresult`

- `build(claims, indexes)` builds a `QueryResult`.
  - `claims` maps claim CIDs to `Claim`.
  - `indexes` maps encoded context IDs to `ShardedDagIndex`. Each index is archived as a CAR block.
- `extract(stream)` reads a `QueryResult` back from a CAR byte stream. It raises `ValueError` for any of these:
  - a malformed CAR;
  - a number of roots other than one;
  - a missing root block;
  - a root that cannot be decoded.
- `build_compressed(target, principal, claims, indexes)` tries to compress the result.
  - It applies when `target` is a slice of an indexed shard and there is a location claim for that shard.
  - The result then holds only one new location claim, issued by `principal`, and no indexes.
  - The new claim's range is the shard's range offset plus the slice position. It keeps the original URLs, space and expiry.
  - `principal` must have a `did` attribute and a `sign(payload)` method.
  - Otherwise it returns the same as `build`.
- A `QueryResult` exposes these methods:
  - `root()` returns a `(cid, data)` pair;
  - `claims()` returns the claim links;
  - `indexes()` returns the index archive links;
  - `blocks()` yields every `(cid, data)` pair.

## What this package does not do

- It has no command-line program and no HTTP server.
- It ships no concrete stores, queues, indexer clients or publishers; these are passed in by the caller.
- The claims it writes into query results are plain CBOR documents. The only signature on them is whatever `principal.sign` returns. No delegation or signature is ever verified.