"""
Ledger store: durable storage for accounts, tracked addresses and their
transactions, on top of SQLModel.

Every ``LedgerStore`` method runs in its own short unit of work. Callers that
need several writes to commit together open ``LedgerStore.unit_of_work()``
and call the same methods on the yielded ``LedgerSession``.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, func, select

from errors import StoreFailure
from models import Account, Address, Transaction

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False):
    """
    Create the SQLAlchemy engine. SQLite connections are shared with the
    API thread pool, and in-memory databases must keep a single connection.
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


class LedgerSession:
    """Ledger operations bound to one open database session."""

    def __init__(self, session: Session):
        self.session = session

    # Accounts

    def get_account(self, username: str) -> Optional[Account]:
        return self.session.get(Account, username)

    def put_account(self, username: str, password_hash: str) -> Account:
        account = Account(username=username, password_hash=password_hash)
        self.session.add(account)
        self.session.flush()
        return account

    # Addresses

    def get_address(self, key: str) -> Optional[Address]:
        return self.session.get(Address, key)

    def put_address(self, key: str, balance: int, owner: str) -> Address:
        """Insert the address, or overwrite balance and owner of an existing one."""
        if balance < 0:
            raise ValueError(f"negative balance for {key}: {balance}")
        address_obj = self.session.get(Address, key)
        if address_obj is None:
            address_obj = Address(address=key, balance=balance, username=owner)
        else:
            address_obj.balance = balance
            address_obj.username = owner
        address_obj.sync_status = "DONE"
        address_obj.last_synced_at = datetime.utcnow()
        self.session.add(address_obj)
        self.session.flush()
        return address_obj

    def mark_synced(self, key: str, status: str = "DONE") -> None:
        address_obj = self.session.get(Address, key)
        if address_obj is None:
            return
        address_obj.sync_status = status
        address_obj.last_synced_at = datetime.utcnow()
        self.session.add(address_obj)
        self.session.flush()

    def delete_address(self, key: str) -> None:
        address_obj = self.session.get(Address, key)
        if address_obj is not None:
            self.session.delete(address_obj)
            self.session.flush()

    def list_addresses(self, owner: str) -> List[Address]:
        stmt = select(Address).where(Address.username == owner).order_by(Address.created_at, Address.address)
        return list(self.session.exec(stmt).all())

    # Transactions

    def put_transaction(
        self,
        tx_hash: str,
        block: int,
        amount: int,
        address: str,
        position: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Insert a transaction unless its hash is already stored.
        Returns True if a row was written.
        """
        if self.session.get(Transaction, tx_hash) is not None:
            return False
        self.session.add(Transaction(
            tx_hash=tx_hash,
            block=block,
            amount=amount,
            address=address,
            position=position,
            timestamp=timestamp,
        ))
        self.session.flush()
        return True

    def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        return self.session.get(Transaction, tx_hash)

    def delete_transactions(self, address: str) -> int:
        txs = self.list_transactions(address)
        for tx in txs:
            self.session.delete(tx)
        self.session.flush()
        return len(txs)

    def count_transactions(self, address: str) -> int:
        stmt = select(func.count(Transaction.tx_hash)).where(Transaction.address == address)
        return self.session.exec(stmt).one()

    def list_transactions(self, address: str) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.address == address)
            .order_by(Transaction.position, Transaction.tx_hash)
        )
        return list(self.session.exec(stmt).all())


class LedgerStore:
    def __init__(self, engine):
        self.engine = engine

    def create_all(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def unit_of_work(self) -> Iterator[LedgerSession]:
        """
        Yield a LedgerSession whose writes commit together on exit,
        or roll back if the block raises.
        """
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                yield LedgerSession(session)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error("Ledger unit of work rolled back: %s", e)
                raise StoreFailure(str(e)) from e

    def get_account(self, username: str) -> Optional[Account]:
        with self.unit_of_work() as ledger:
            return ledger.get_account(username)

    def put_account(self, username: str, password_hash: str) -> Account:
        with self.unit_of_work() as ledger:
            return ledger.put_account(username, password_hash)

    def get_address(self, key: str) -> Optional[Address]:
        with self.unit_of_work() as ledger:
            return ledger.get_address(key)

    def put_address(self, key: str, balance: int, owner: str) -> Address:
        with self.unit_of_work() as ledger:
            return ledger.put_address(key, balance, owner)

    def mark_synced(self, key: str, status: str = "DONE") -> None:
        with self.unit_of_work() as ledger:
            ledger.mark_synced(key, status)

    def delete_address(self, key: str) -> None:
        with self.unit_of_work() as ledger:
            ledger.delete_address(key)

    def list_addresses(self, owner: str) -> List[Address]:
        with self.unit_of_work() as ledger:
            return ledger.list_addresses(owner)

    def put_transaction(self, tx_hash: str, block: int, amount: int, address: str,
                        position: int = 0, timestamp: Optional[datetime] = None) -> bool:
        with self.unit_of_work() as ledger:
            return ledger.put_transaction(tx_hash, block, amount, address, position, timestamp)

    def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        with self.unit_of_work() as ledger:
            return ledger.get_transaction(tx_hash)

    def delete_transactions(self, address: str) -> int:
        with self.unit_of_work() as ledger:
            return ledger.delete_transactions(address)

    def count_transactions(self, address: str) -> int:
        with self.unit_of_work() as ledger:
            return ledger.count_transactions(address)

    def list_transactions(self, address: str) -> List[Transaction]:
        with self.unit_of_work() as ledger:
            return ledger.list_transactions(address)
