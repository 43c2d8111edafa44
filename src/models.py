from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel
from sqlmodel import Field, SQLModel

class Account(SQLModel, table=True):
    """
    Account table. Owns zero or more tracked addresses.
    """
    username: str = Field(primary_key=True)
    password_hash: str = Field(nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)

class Address(SQLModel, table=True):
    """
    Address table, keyed by the chain address string.
    """
    address: str = Field(primary_key=True)
    balance: int = Field(default=0, ge=0)  # satoshis
    username: str = Field(foreign_key="account.username", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Sync metadata
    sync_status: str = Field(default="DONE")  # DONE or ERROR
    last_synced_at: Optional[datetime] = None

class Transaction(SQLModel, table=True):
    """
    Transaction table referencing Address by key. The hash is globally unique.
    """
    tx_hash: str = Field(primary_key=True)
    block: int = Field(default=0)  # 0 while unconfirmed
    amount: int = Field(default=0)  # signed change to the address balance, satoshis
    position: int = Field(default=0)  # index in the provider's ordering
    timestamp: Optional[datetime] = None

    address: str = Field(foreign_key="address.address", index=True)


# Provider payloads

class ChainTransaction(BaseModel):
    hash: str
    block: int = 0
    amount: int = 0
    timestamp: Optional[datetime] = None

class AddressData(BaseModel):
    """
    Balance and transaction history of an address as reported by a provider.
    """
    address: str
    balance: int = 0
    transactions: List[ChainTransaction] = []


# Sync engine results

class SyncStatus(str, Enum):
    ADDED = "ADDED"
    ALREADY_TRACKED = "ALREADY_TRACKED"
    REMOVED = "REMOVED"
    NOT_TRACKED = "NOT_TRACKED"
    UPDATED = "UPDATED"
    NO_CHANGE = "NO_CHANGE"
    ERROR = "ERROR"

class SyncResult(BaseModel):
    address: str
    status: SyncStatus
    new_transactions: int = 0
    detail: Optional[str] = None


# Account reporting

class TransactionReport(BaseModel):
    hash: str
    block: int
    amount: int
    timestamp: Optional[datetime] = None

class AddressReport(BaseModel):
    address: str
    balance: int
    transaction_count: int
    sync_status: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    transactions: List[TransactionReport] = []

class AccountSummary(BaseModel):
    username: str
    balance: int = 0
    transaction_count: int = 0
    addresses: List[AddressReport] = []
