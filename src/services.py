import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator

from errors import NotFoundError, ProviderUnavailable
from ledger import LedgerSession, LedgerStore
from models import (
    AccountSummary,
    Address,
    AddressData,
    AddressReport,
    SyncResult,
    SyncStatus,
    TransactionReport,
)
from providers import ChainDataProvider

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Keeps tracked addresses in the ledger in step with a block data provider.

    The engine holds no state of its own. The sync cursor of an address is the
    number of its transactions already in the ledger, so a refresh only asks
    the provider for transactions past that point. Callers must not run two
    operations for the same address at once (see AddressLocks).
    """

    def __init__(self, store: LedgerStore, provider: ChainDataProvider):
        self.store = store
        self.provider = provider

    def add_address(self, address: str, owner: str) -> SyncResult:
        if self.store.get_address(address) is not None:
            return SyncResult(address=address, status=SyncStatus.ALREADY_TRACKED)

        # Nothing is written unless the fetch succeeds
        address_data = self.provider.fetch(address, 0)

        with self.store.unit_of_work() as ledger:
            if ledger.get_address(address) is not None:
                return SyncResult(address=address, status=SyncStatus.ALREADY_TRACKED)
            ledger.put_address(address, address_data.balance, owner)
            inserted = _store_transactions(ledger, address, address_data, start=0)

        logger.info("Address %s added for %s with %d transaction(s)", address, owner, inserted)
        return SyncResult(address=address, status=SyncStatus.ADDED, new_transactions=inserted)

    def remove_address(self, address: str) -> SyncResult:
        with self.store.unit_of_work() as ledger:
            if ledger.get_address(address) is None:
                return SyncResult(address=address, status=SyncStatus.NOT_TRACKED)
            # Transactions go before the address row they reference
            removed = ledger.delete_transactions(address)
            ledger.delete_address(address)

        logger.info("Address %s removed with %d transaction(s)", address, removed)
        return SyncResult(address=address, status=SyncStatus.REMOVED)

    def refresh_address(self, address: str) -> SyncResult:
        with self.store.unit_of_work() as ledger:
            if ledger.get_address(address) is None:
                return SyncResult(address=address, status=SyncStatus.NOT_TRACKED)
            offset = ledger.count_transactions(address)

        try:
            address_data = self.provider.fetch(address, offset)
        except ProviderUnavailable:
            self.store.mark_synced(address, "ERROR")
            raise

        if not address_data.transactions:
            self.store.mark_synced(address)
            return SyncResult(address=address, status=SyncStatus.NO_CHANGE)

        with self.store.unit_of_work() as ledger:
            address_obj = ledger.get_address(address)
            if address_obj is None:
                # Removed while the provider was being queried
                return SyncResult(address=address, status=SyncStatus.NOT_TRACKED)
            inserted = _store_transactions(ledger, address, address_data, start=offset)
            # The provider's balance is authoritative; deltas are never summed here
            ledger.put_address(address, address_data.balance, address_obj.username)

        if inserted < len(address_data.transactions):
            logger.warning(
                "Provider redelivered %d known transaction(s) for %s at offset %d; "
                "stored history may be out of order with the source, a full resync will rebuild it",
                len(address_data.transactions) - inserted, address, offset,
            )
        logger.info("Address %s refreshed: %d new transaction(s), balance=%d",
                    address, inserted, address_data.balance)
        status = SyncStatus.UPDATED if inserted else SyncStatus.NO_CHANGE
        return SyncResult(address=address, status=status, new_transactions=inserted)

    def resync_address(self, address: str) -> SyncResult:
        """
        Rebuild an address's history from offset 0, replacing what is stored.
        Used when the source's ordering changed under a previous sync.
        """
        address_obj = self.store.get_address(address)
        if address_obj is None:
            return SyncResult(address=address, status=SyncStatus.NOT_TRACKED)

        try:
            address_data = self.provider.fetch(address, 0)
        except ProviderUnavailable:
            self.store.mark_synced(address, "ERROR")
            raise

        with self.store.unit_of_work() as ledger:
            address_obj = ledger.get_address(address)
            if address_obj is None:
                return SyncResult(address=address, status=SyncStatus.NOT_TRACKED)
            ledger.delete_transactions(address)
            inserted = _store_transactions(ledger, address, address_data, start=0)
            ledger.put_address(address, address_data.balance, address_obj.username)

        logger.info("Address %s resynced: %d transaction(s), balance=%d",
                    address, inserted, address_data.balance)
        return SyncResult(address=address, status=SyncStatus.UPDATED, new_transactions=inserted)


def _store_transactions(ledger: LedgerSession, address: str, address_data: AddressData, start: int) -> int:
    inserted = 0
    for i, tx in enumerate(address_data.transactions):
        if ledger.put_transaction(
            tx.hash,
            tx.block,
            tx.amount,
            address,
            position=start + i,
            timestamp=tx.timestamp,
        ):
            inserted += 1
    return inserted


def summarize_account(store: LedgerStore, username: str) -> AccountSummary:
    """
    Total balance and transaction count across an account's addresses,
    from stored data only.
    """
    summary = AccountSummary(username=username)
    with store.unit_of_work() as ledger:
        for address_obj in ledger.list_addresses(username):
            report = _address_report(ledger, address_obj)
            summary.balance += report.balance
            summary.transaction_count += report.transaction_count
            summary.addresses.append(report)
    return summary


def describe_address(store: LedgerStore, username: str, address: str) -> AddressReport:
    """Stored state of one of the account's addresses."""
    with store.unit_of_work() as ledger:
        address_obj = ledger.get_address(address)
        if address_obj is None or address_obj.username != username:
            raise NotFoundError(f"address {address}")
        return _address_report(ledger, address_obj)


def _address_report(ledger: LedgerSession, address_obj: Address) -> AddressReport:
    txs = ledger.list_transactions(address_obj.address)
    return AddressReport(
        address=address_obj.address,
        balance=address_obj.balance,
        transaction_count=len(txs),
        sync_status=address_obj.sync_status,
        last_synced_at=address_obj.last_synced_at,
        transactions=[
            TransactionReport(hash=tx.tx_hash, block=tx.block, amount=tx.amount, timestamp=tx.timestamp)
            for tx in txs
        ],
    )


class AddressLocks:
    """Registry of one lock per address key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, address: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks[address]
        with lock:
            yield

