import pytest
from fastapi.testclient import TestClient

from app import create_app
from errors import ProviderUnavailable
from ledger import LedgerStore, make_engine
from models import AddressData, ChainTransaction

TEST_DATABASE_URL = "sqlite://"


def tx(tx_hash: str, block: int = 1, amount: int = 0) -> ChainTransaction:
    return ChainTransaction(hash=tx_hash, block=block, amount=amount)


class ScriptedProvider:
    """
    In-memory block data provider. Each address has a full history; fetch
    serves the slice from the requested offset and records the call.
    """

    def __init__(self):
        self.balances = {}
        self.histories = {}
        self.unavailable = set()
        self.calls = []

    def set(self, address, balance, transactions):
        self.balances[address] = balance
        self.histories[address] = list(transactions)

    def fetch(self, address, offset):
        self.calls.append((address, offset))
        if address in self.unavailable:
            raise ProviderUnavailable("scripted outage")
        return AddressData(
            address=address,
            balance=self.balances.get(address, 0),
            transactions=self.histories.get(address, [])[offset:],
        )


@pytest.fixture
def store():
    """A ledger store on a fresh in-memory database."""
    ledger = LedgerStore(make_engine(TEST_DATABASE_URL))
    ledger.create_all()
    return ledger


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def account(store):
    store.put_account("alice", "not-a-real-hash")
    return "alice"


@pytest.fixture
def client(store, provider):
    """
    A TestClient wired to the test ledger and the scripted provider.
    """
    app = create_app(store=store, provider=provider)
    with TestClient(app) as c:
        yield c
