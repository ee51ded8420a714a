"""
Data-access contract shared by the local SQL backend and the managed REST
backend.

Rows cross this boundary as plain dicts shaped like PostgREST rows: column
names as keys, timestamps as ISO-8601 strings, and joined tables nested
under the related table's name (``categories``, ``books``, ``profiles``).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


class DataStoreError(Exception):
    """The backend call itself failed (transport, auth, constraint)."""


class AuthenticationError(DataStoreError):
    pass


class DuplicateBookError(DataStoreError):
    pass


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None


@dataclass(frozen=True)
class BorrowResult:
    success: bool
    message: Optional[str] = None
    loan_id: Optional[int] = None

    @classmethod
    def from_payload(cls, payload):
        payload = payload or {}
        return cls(
            success=bool(payload.get("success")),
            message=payload.get("message"),
            loan_id=payload.get("loan_id"),
        )

    def to_dict(self):
        return {"success": self.success, "message": self.message, "loan_id": self.loan_id}


@dataclass(frozen=True)
class ReturnResult:
    success: bool
    fine: Decimal = Decimal("0.00")
    message: Optional[str] = None

    @classmethod
    def from_payload(cls, payload):
        payload = payload or {}
        return cls(
            success=bool(payload.get("success")),
            fine=Decimal(str(payload.get("fine") or 0)),
            message=payload.get("message"),
        )

    def to_dict(self):
        return {"success": self.success, "fine": float(self.fine), "message": self.message}


def parse_timestamp(value):
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if value is None or isinstance(value, datetime):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class DataStore(ABC):
    # --- catalog ---

    @abstractmethod
    def list_books(self):
        """All books ordered by title, each with ``categories: {name}`` or None."""

    @abstractmethod
    def get_book(self, book_id):
        pass

    @abstractmethod
    def list_categories(self):
        pass

    @abstractmethod
    def insert_book(self, fields):
        """Insert a book; ``available_copies`` starts equal to ``total_copies``."""

    # --- loans ---

    @abstractmethod
    def list_loans(self, limit=50):
        """Most recently issued loans joined with book and borrower summaries."""

    @abstractmethod
    def list_active_loans(self, user_id):
        """The borrower's active loans, soonest due first."""

    @abstractmethod
    def borrow(self, book_id, user_id, due_date):
        """Atomically take one copy and open a loan. Returns ``BorrowResult``."""

    @abstractmethod
    def return_loan(self, loan_id):
        """Atomically close a loan, charge its fine and put the copy back."""

    # --- profiles & identity ---

    @abstractmethod
    def get_profile(self, user_id):
        pass

    @abstractmethod
    def sign_in(self, email, password):
        """Return an ``Identity`` or raise ``AuthenticationError``."""

    @abstractmethod
    def sign_up(self, email, password, first_name=None, last_name=None):
        pass

    @abstractmethod
    def resolve_identity(self, stored):
        """Turn the session's stored identity back into an ``Identity`` or None."""

    def sign_out(self, identity):
        pass

    def for_identity(self, identity):
        return self


def create_datastore(config):
    """Build the data store selected by ``DATA_BACKEND``."""
    backend = config.get("DATA_BACKEND", "sql")
    if backend == "sql":
        from .sql_store import SqlDataStore

        return SqlDataStore.from_config(config)
    if backend == "rest":
        from .rest_store import RestDataStore

        return RestDataStore.from_config(config)
    raise ValueError(f"Unknown DATA_BACKEND {backend!r}")
