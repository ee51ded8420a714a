"""
Page views: one object per page render or action.

A view gates access from the current identity, loads its own snapshot from
the data store, performs at most one action and records the notifications
the page should show. Routes turn ``redirect_to`` and ``notifications`` into
Flask redirects and flashed messages.
"""
import logging
import math
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional

from .catalog import filter_books
from .datastore import DataStoreError, DuplicateBookError, parse_timestamp
from .fines import format_money
from .inflight import InFlightTracker
from .models import utcnow

logger = logging.getLogger(__name__)

SIGN_IN_ENDPOINT = "pages.auth"
DASHBOARD_ENDPOINT = "pages.dashboard"


class Notification(NamedTuple):
    title: str
    description: str = ""
    reason: Optional[str] = None  # None on success, else why the action failed

    @property
    def category(self):
        return "error" if self.reason else "message"


class Gate(Enum):
    LOADING = "loading"
    SIGN_IN = "sign_in"
    DENIED = "denied"
    OPEN = "open"


class BookFormError(ValueError):
    pass


class PageView:
    requires_identity = True
    requires_admin = False

    def __init__(self, store, identity, tracker=None):
        self.store = store
        self.identity = identity
        self.tracker = tracker or InFlightTracker()
        self.notifications = []
        self.redirect_to = None
        self.loaded = False
        self.profile = None

    def notify(self, title, description="", reason=None):
        self.notifications.append(Notification(title, description, reason))

    @property
    def failure(self):
        """The most recent failed notification, if any."""
        return next((n for n in reversed(self.notifications) if n.reason), None)

    def gate(self):
        if self.identity.loading:
            return Gate.LOADING

        if not self.identity.authenticated:
            if self.requires_identity:
                self.redirect_to = SIGN_IN_ENDPOINT
                return Gate.SIGN_IN
            return Gate.OPEN

        if self.requires_admin:
            # Always re-read the role; never trust anything cached client-side.
            try:
                profile = self.store.get_profile(self.identity.user_id)
            except DataStoreError as e:
                logger.error("Admin check for %s failed: %s", self.identity.user_id, e)
                self.notify("Error", str(e), reason="backend")
                self.redirect_to = DASHBOARD_ENDPOINT
                return Gate.DENIED
            if not profile or profile.get("role") != "admin":
                logger.info("Denied admin access to %s", self.identity.user_id)
                self.notify("Access Denied", "You do not have admin privileges", reason="denied")
                self.redirect_to = DASHBOARD_ENDPOINT
                return Gate.DENIED
            self.profile = profile

        return Gate.OPEN

    def mount(self):
        gate = self.gate()
        if gate is Gate.OPEN and self.redirect_to is None:
            self.load()
        return gate

    def load(self):
        self.loaded = True


class LandingView(PageView):
    requires_identity = False

    def gate(self):
        if self.identity.authenticated:
            self.redirect_to = DASHBOARD_ENDPOINT
        return Gate.OPEN


class CatalogView(PageView):
    def __init__(self, store, identity, tracker=None, query="", loan_period_days=14):
        super().__init__(store, identity, tracker)
        self.query = query or ""
        self.loan_period_days = loan_period_days
        self.books = []

    def load(self):
        try:
            self.books = self.store.list_books()
        except DataStoreError as e:
            logger.error("Error fetching books: %s", e)
            self.notify("Error loading books", str(e), reason="backend")
            self.books = []
        super().load()

    @property
    def visible_books(self):
        return filter_books(self.books, self.query)

    def find(self, book_id):
        return next((b for b in self.books if b["id"] == book_id), None)

    def is_borrowing(self, book_id):
        return self.tracker.is_pending("borrow", self.identity.user_id, book_id)

    def can_borrow(self, book):
        return (
            self.identity.authenticated
            and (book.get("available_copies") or 0) > 0
            and not self.is_borrowing(book["id"])
        )

    def borrow(self, book_id):
        if not self.loaded or self.failure:
            # The snapshot failed to load; its notification already says why.
            return None
        book = self.find(book_id)
        if book is None:
            self.notify("Unable to borrow", "Book not found", reason="rejected")
            return None
        if (book.get("available_copies") or 0) <= 0:
            self.notify("Unable to borrow", "No copies available", reason="rejected")
            return None

        user_id = self.identity.user_id
        with self.tracker.claim("borrow", user_id, book_id) as claimed:
            if not claimed:
                self.notify("Please wait", "This book is already being borrowed", reason="busy")
                return None
            due_date = utcnow() + timedelta(days=self.loan_period_days)
            try:
                result = self.store.borrow(book_id, user_id, due_date)
            except DataStoreError as e:
                logger.warning("Borrow of book %s by %s failed: %s", book_id, user_id, e)
                self.notify("Error", str(e), reason="backend")
                return None

        if result.success:
            book["available_copies"] = max(0, book["available_copies"] - 1)
            self.notify("Book borrowed successfully!", f"Due date: {due_date:%d %b %Y}")
        else:
            self.notify("Unable to borrow", result.message or "Unknown error", reason="rejected")
        return result


def days_until_due(due_date, now=None):
    due = parse_timestamp(due_date)
    remaining = due - (now or utcnow())
    return math.ceil(remaining.total_seconds() / 86400)


class DashboardView(PageView):
    def __init__(self, store, identity, tracker=None):
        super().__init__(store, identity, tracker)
        self.loans = []

    def load(self):
        user_id = self.identity.user_id
        try:
            self.profile = self.store.get_profile(user_id)
            loans = self.store.list_active_loans(user_id)
        except DataStoreError as e:
            logger.error("Error fetching dashboard data: %s", e)
            self.notify("Error loading dashboard", str(e), reason="backend")
            loans = []

        now = utcnow()
        self.loans = []
        for loan in loans:
            days = days_until_due(loan["due_date"], now)
            self.loans.append(dict(loan, days_until_due=days, overdue=days <= 0, due_soon=days < 3))
        super().load()

    @property
    def total_fines(self):
        return Decimal(str((self.profile or {}).get("total_fines") or 0))

    @property
    def total_fines_display(self):
        return format_money(self.total_fines)


def _optional_int(form, key, label):
    value = form.get(key)
    raw = "" if value is None else str(value).strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise BookFormError(f"{label} must be a whole number")


def parse_book_form(form):
    """Validate add-book input from an HTML form or JSON body."""
    fields = {}
    for key, label in (("isbn", "ISBN"), ("title", "Title"), ("author", "Author")):
        value = str(form.get(key) or "").strip()
        if not value:
            raise BookFormError(f"{label} is required")
        fields[key] = value

    total = _optional_int(form, "total_copies", "Total copies")
    if total is None:
        total = 1
    if total < 1:
        raise BookFormError("Total copies must be at least 1")
    fields["total_copies"] = total

    fields["category_id"] = _optional_int(form, "category_id", "Category")
    fields["publication_year"] = _optional_int(form, "publication_year", "Publication year")
    fields["description"] = str(form.get("description") or "").strip() or None
    fields["cover_image_url"] = str(form.get("cover_image_url") or "").strip() or None
    return fields


class AdminView(PageView):
    requires_admin = True

    def __init__(self, store, identity, tracker=None, loan_limit=50):
        super().__init__(store, identity, tracker)
        self.loan_limit = loan_limit
        self.categories = []
        self.loans = []

    def load(self):
        try:
            self.categories = self.store.list_categories()
            self.loans = self.store.list_loans(limit=self.loan_limit)
        except DataStoreError as e:
            logger.error("Error fetching admin data: %s", e)
            self.notify("Error loading admin data", str(e), reason="backend")
        super().load()

    def is_returning(self, loan_id):
        return self.tracker.is_pending("return", self.identity.user_id, loan_id)

    def add_book(self, form):
        try:
            fields = parse_book_form(form)
        except BookFormError as e:
            self.notify("Error adding book", str(e), reason="invalid")
            return None

        with self.tracker.claim("add_book", self.identity.user_id, fields["isbn"]) as claimed:
            if not claimed:
                self.notify("Please wait", "This book is already being added", reason="busy")
                return None
            try:
                book = self.store.insert_book(fields)
            except DataStoreError as e:
                logger.warning("Adding book %s failed: %s", fields["isbn"], e)
                reason = "rejected" if isinstance(e, DuplicateBookError) else "backend"
                self.notify("Error adding book", str(e), reason=reason)
                return None

        self.notify("Book added successfully!", f"{fields['title']} has been added to the library.")
        return book

    def return_loan(self, loan_id):
        with self.tracker.claim("return", self.identity.user_id, loan_id) as claimed:
            if not claimed:
                self.notify("Please wait", "This return is already being processed", reason="busy")
                return None
            try:
                result = self.store.return_loan(loan_id)
            except DataStoreError as e:
                logger.warning("Return of loan %s failed: %s", loan_id, e)
                self.notify("Error", str(e), reason="backend")
                return None

        if result.success:
            if result.fine > 0:
                description = f"Fine: {format_money(result.fine)}"
            else:
                description = "No fine incurred."
            self.notify("Book returned successfully!", description)
            self.load()
        else:
            self.notify("Unable to process return", result.message or "Unknown error", reason="rejected")
        return result
