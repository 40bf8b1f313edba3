"""Marks cached provider records expirable once their adverts are synced remotely."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from claimindex.model import ProviderStore


@dataclass(frozen=True)
class Advertisement:
    """An indexer advertisement: a link to its entries and to the previous advert."""

    entries: str
    previous_id: str | None = None


class _AdvertStore(Protocol):
    async def advert(self, link: str) -> Advertisement: ...

    def entries(self, link: str) -> AsyncIterator[bytes]: ...


class RemoteSyncer:
    """Walks an advertisement chain and makes the cached entries expirable."""

    def __init__(
        self,
        provider_store: ProviderStore,
        store: _AdvertStore,
        log: logging.Logger | None = None,
    ) -> None:
        self._provider_store = provider_store
        self._store = store
        self._log = log or logging.getLogger("claimindex.remotesyncer")

    async def handle_remote_sync(self, head: str, prev: str | None) -> None:
        """Process adverts from ``head`` back to, but not including, ``prev``.

        Failures are logged and end the walk; nothing is raised.
        """
        log = self._log
        log.info("handling IPNI remote sync from %s to %s", prev, head)

        cur = head
        while True:
            try:
                ad = await self._store.advert(cur)
            except Exception as err:
                log.error("getting advert: %s: %s", cur, err)
                return

            batch = self._provider_store.batch()
            entries = aiter(self._store.entries(ad.entries))
            while True:
                try:
                    digest = await anext(entries)
                except StopAsyncIteration:
                    break
                except Exception as err:
                    log.error(
                        "iterating advert entries: %s (advert) -> %s (entries): %s",
                        cur,
                        ad.entries,
                        err,
                    )
                    return
                try:
                    await batch.set_expirable(digest, True)
                except Exception as err:
                    log.error("adding digest to batch: %s: %s", digest.hex(), err)
                    return

            try:
                await batch.commit()
            except Exception as err:
                log.error("committing batch: %s: %s", cur, err)
                return

            if ad.previous_id is None or (prev is not None and ad.previous_id == prev):
                break
            cur = ad.previous_id

        log.info("handled IPNI remote sync from %s to %s", prev, head)