"""Error types shared by the ledger, providers, sync engine and API.

Error code ranges:
  1xxx: Account
  2xxx: Lookup
  3xxx: Block data provider
  9xxx: System
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 1xxx: Account ---

class AccountExistsError(AppError):
    def __init__(self, username: str) -> None:
        super().__init__(1001, f"Account already exists: {username}", 409)


class InvalidCredentialsError(AppError):
    def __init__(self) -> None:
        super().__init__(1002, "Invalid username or password", 401)


# --- 2xxx: Lookup ---

class NotFoundError(AppError):
    def __init__(self, what: str) -> None:
        super().__init__(2001, f"Not found: {what}", 404)


# --- 3xxx: Provider ---

class ProviderUnavailable(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(3001, f"Block data provider unavailable: {detail}", 502)


# --- 9xxx: System ---

class StoreFailure(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(9001, f"Ledger store failure: {detail}", 500)
