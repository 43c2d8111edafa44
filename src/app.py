"""
Cointracker HTTP API.

Run with: uvicorn app:app --app-dir src --port 8000
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field

from errors import AccountExistsError, AppError, InvalidCredentialsError
from ledger import LedgerStore, make_engine
from models import AccountSummary, AddressReport, SyncResult, SyncStatus
from providers import ChainDataProvider, build_provider
from security import hash_password, verify_password
from services import AddressLocks, SyncEngine, describe_address, summarize_account
from settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

security = HTTPBasic(auto_error=False)


# Schemas

class AccountCreate(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

class AddressBatch(BaseModel):
    addresses: List[str]

class BatchResponse(BaseModel):
    username: str
    processed: int
    failed: int
    results: List[SyncResult]


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    provider: Optional[ChainDataProvider] = None,
) -> FastAPI:
    """
    Build the API. The ledger store and block data provider are built from
    settings unless supplied.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ledger = store or LedgerStore(make_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO))
        ledger.create_all()
        app.state.store = ledger
        app.state.sync_engine = SyncEngine(ledger, provider or build_provider(settings))
        app.state.address_locks = AddressLocks()
        logger.info("Cointracker started with %s provider", type(app.state.sync_engine.provider).__name__)
        yield

    app = FastAPI(title="Cointracker", lifespan=lifespan)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info("[%s] %s -> %d (%.0fms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content={"code": exc.code, "message": exc.message},
        )

    _register_routes(app)
    return app


# Dependencies

def get_store(request: Request) -> LedgerStore:
    return request.app.state.store

def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine

def get_address_locks(request: Request) -> AddressLocks:
    return request.app.state.address_locks

def authenticate(
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
    store: LedgerStore = Depends(get_store),
) -> str:
    """
    Resolve HTTP Basic credentials to a username. Missing credentials, unknown
    users and wrong passwords are all rejected with InvalidCredentialsError.
    """
    if credentials is None:
        raise InvalidCredentialsError()
    account = store.get_account(credentials.username)
    if account is None or not verify_password(credentials.password, account.password_hash):
        raise InvalidCredentialsError()
    return account.username


def _run_batch(username: str, addresses: List[str], operation, locks: AddressLocks) -> BatchResponse:
    """
    Apply operation to each address in turn. A failing address is reported and
    the batch carries on; operations already applied are kept.
    """
    results = []
    for addr in addresses:
        try:
            with locks.hold(addr):
                results.append(operation(addr))
        except AppError as e:
            logger.error("%s failed for %s: %s", operation.__name__, addr, e.message)
            results.append(SyncResult(address=addr, status=SyncStatus.ERROR, detail=e.message))
    failed = sum(1 for r in results if r.status == SyncStatus.ERROR)
    return BatchResponse(username=username, processed=len(results) - failed, failed=failed, results=results)


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/createaccount", status_code=status.HTTP_201_CREATED)
    def create_account(payload: AccountCreate, store: LedgerStore = Depends(get_store)):
        if store.get_account(payload.username) is not None:
            raise AccountExistsError(payload.username)
        store.put_account(payload.username, hash_password(payload.password))
        logger.info("New account created: %s", payload.username)
        return {"username": payload.username}

    @app.post("/addaddresses", response_model=BatchResponse)
    def add_addresses(
        payload: AddressBatch,
        username: str = Depends(authenticate),
        engine: SyncEngine = Depends(get_sync_engine),
        locks: AddressLocks = Depends(get_address_locks),
    ):
        def add_address(addr: str) -> SyncResult:
            return engine.add_address(addr, username)

        response = _run_batch(username, payload.addresses, add_address, locks)
        added = sum(1 for r in response.results if r.status == SyncStatus.ADDED)
        logger.info("%d address(es) added for account: %s", added, username)
        return response

    @app.delete("/removeaddresses", response_model=BatchResponse)
    def remove_addresses(
        payload: AddressBatch,
        username: str = Depends(authenticate),
        store: LedgerStore = Depends(get_store),
        engine: SyncEngine = Depends(get_sync_engine),
        locks: AddressLocks = Depends(get_address_locks),
    ):
        def remove_address(addr: str) -> SyncResult:
            address_obj = store.get_address(addr)
            if address_obj is None or address_obj.username != username:
                return SyncResult(address=addr, status=SyncStatus.NOT_TRACKED)
            return engine.remove_address(addr)

        response = _run_batch(username, payload.addresses, remove_address, locks)
        removed = sum(1 for r in response.results if r.status == SyncStatus.REMOVED)
        logger.info("%d address(es) removed for account: %s", removed, username)
        return response

    @app.get("/getaccountinfo", response_model=AccountSummary)
    def get_account_info(
        username: str = Depends(authenticate),
        store: LedgerStore = Depends(get_store),
    ):
        logger.info("Info requested for: %s", username)
        return summarize_account(store, username)

    @app.get("/addresses/{address}", response_model=AddressReport)
    def get_address_details(
        address: str,
        username: str = Depends(authenticate),
        store: LedgerStore = Depends(get_store),
    ):
        return describe_address(store, username, address)

    @app.put("/updateaccount", response_model=BatchResponse)
    def update_account(
        full: bool = Query(False, description="Rebuild each address's history from scratch"),
        username: str = Depends(authenticate),
        store: LedgerStore = Depends(get_store),
        engine: SyncEngine = Depends(get_sync_engine),
        locks: AddressLocks = Depends(get_address_locks),
    ):
        addresses = [a.address for a in store.list_addresses(username)]
        operation = engine.resync_address if full else engine.refresh_address
        response = _run_batch(username, addresses, operation, locks)
        updated = sum(1 for r in response.results if r.status == SyncStatus.UPDATED)
        logger.info("%d address(es) updated for account: %s", updated, username)
        return response


logging.basicConfig(
    level=default_settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
