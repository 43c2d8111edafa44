"""
Block data providers.

A provider answers ``fetch(address, offset)`` with the address's current
balance and every transaction from position ``offset`` onwards in the
oldest-first ordering. Offset-based paging against the source is hidden inside
the provider; callers always get the complete remainder.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Protocol, Tuple

import requests

from errors import ProviderUnavailable
from models import AddressData, ChainTransaction

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class ChainDataProvider(Protocol):
    def fetch(self, address: str, offset: int) -> AddressData:
        ...


def _parse_transaction(tx_data: dict) -> ChainTransaction:
    """
    Convert one rawaddr-style transaction into a ChainTransaction.
    Unconfirmed transactions have no block height and are stored at block 0.
    """
    tx_hash = tx_data.get("hash")
    if not tx_hash:
        raise ProviderUnavailable("transaction without hash")
    return ChainTransaction(
        hash=tx_hash,
        block=tx_data.get("block_height") or 0,
        amount=tx_data.get("result", 0),
        timestamp=_parse_timestamp(tx_data.get("time")),
    )


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def _collect(address: str, pages: Iterator[Tuple[int, List[dict]]]) -> AddressData:
    """Drain a page sequence; the balance of the last page read is reported."""
    balance = 0
    transactions = []
    try:
        for balance, txs in pages:
            transactions.extend(_parse_transaction(tx) for tx in txs)
        balance = int(balance)
    except (TypeError, ValueError, AttributeError) as e:
        raise ProviderUnavailable(f"malformed data for {address}: {e}") from e
    if balance < 0:
        raise ProviderUnavailable(f"negative balance reported for {address}")
    return AddressData(address=address, balance=balance, transactions=transactions)


class BlockchainProvider:
    """
    blockchain.info ``rawaddr`` endpoint, paged with limit/offset.

    The endpoint lists transactions newest first, so its offsets move every
    time the address receives a transaction. Offsets passed to ``fetch`` count
    from the oldest transaction instead and are translated using ``n_tx``.
    """

    def __init__(
        self,
        base_url: str = "https://blockchain.info/rawaddr/",
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.page_size = page_size
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, address: str, offset: int) -> AddressData:
        if offset < 0:
            raise ValueError("offset must not be negative")
        data = _collect(address, self._pages(address, offset))
        # rawaddr lists newest first; positions are counted from the oldest
        data.transactions.reverse()
        logger.debug("Fetched %d transaction(s) for %s from offset %d", len(data.transactions), address, offset)
        return data

    def _pages(self, address: str, offset: int) -> Iterator[Tuple[int, List[dict]]]:
        """
        Yield (final_balance, txs) pages, newest first, covering the
        ``n_tx - offset`` transactions that come after ``offset`` in oldest-first
        order. The first page fixes ``n_tx`` and the balance for the whole
        fetch. An unknown address yields one empty page.
        """
        payload = self._fetch_page(address, 0)
        if payload is None:
            yield 0, []
            return
        balance = payload.get("final_balance", 0)
        wanted = int(payload.get("n_tx")) - offset
        fetched = 0
        while True:
            txs = (payload.get("txs") or [])[:max(wanted - fetched, 0)]
            yield balance, txs
            fetched += len(txs)
            if not txs or fetched >= wanted:
                return
            payload = self._fetch_page(address, fetched)
            if payload is None:
                raise ProviderUnavailable(f"address {address} vanished while paging at offset {fetched}")

    def _fetch_page(self, address: str, offset: int) -> Optional[dict]:
        url = f"{self.base_url}{address}"
        params = {"limit": self.page_size, "offset": offset}
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            if resp.status_code == 404:
                logger.info("Address %s unknown to block explorer", address)
                return None
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as e:
            logger.warning("Error fetching data from explorer for %s: %s", address, e)
            raise ProviderUnavailable(str(e)) from e
        except ValueError as e:
            raise ProviderUnavailable(f"invalid JSON from explorer: {e}") from e
        if not isinstance(payload, dict):
            raise ProviderUnavailable(f"unexpected payload from explorer for {address}")
        return payload


class FixtureProvider:
    """
    Serves address data from ``<fixture_dir>/<address>.json`` files holding a
    rawaddr-shaped document (``final_balance`` and the full ``txs`` list).
    """

    def __init__(self, fixture_dir: str, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.fixture_dir = fixture_dir
        self.page_size = page_size

    def fetch(self, address: str, offset: int) -> AddressData:
        if offset < 0:
            raise ValueError("offset must not be negative")
        return _collect(address, self._pages(address, offset))

    def _pages(self, address: str, offset: int) -> Iterator[Tuple[int, List[dict]]]:
        document = self._load(address)
        if document is None:
            yield 0, []
            return
        balance = document.get("final_balance", 0)
        txs = document.get("txs") or []
        while True:
            page = txs[offset:offset + self.page_size]
            yield balance, page
            if not page:
                return
            offset += len(page)

    def _load(self, address: str) -> Optional[dict]:
        path = os.path.join(self.fixture_dir, f"{os.path.basename(address)}.json")
        if not os.path.exists(path):
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise ProviderUnavailable(f"cannot read fixture {path}: {e}") from e


def build_provider(settings) -> ChainDataProvider:
    if settings.PROVIDER == "blockchain":
        return BlockchainProvider(
            base_url=settings.BLOCKCHAIN_API_URL,
            page_size=settings.PAGE_SIZE,
            timeout=settings.REQUEST_TIMEOUT,
        )
    if settings.PROVIDER == "fixture":
        return FixtureProvider(settings.FIXTURE_DIR, page_size=settings.PAGE_SIZE)
    raise ValueError(f"Unknown provider: {settings.PROVIDER}")
