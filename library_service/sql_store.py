import logging
import secrets
import uuid
from datetime import timedelta

from sqlalchemy import create_engine, event, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import joinedload, sessionmaker
from werkzeug.security import check_password_hash, generate_password_hash

from .datastore import (
    AuthenticationError,
    BorrowResult,
    DataStore,
    DataStoreError,
    DuplicateBookError,
    Identity,
    ReturnResult,
    parse_timestamp,
)
from .fines import compute_fine
from .models import OPEN_LOAN_STATUSES, Base, Book, Category, Loan, Profile, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------
# Row serialisation (PostgREST-shaped dicts)
# ---------------------------------------------------------

def _iso(value):
    return value.isoformat() if value is not None else None


def _number(value):
    return float(value) if value is not None else None


def book_to_dict(book):
    return {
        "id": book.id,
        "isbn": book.isbn,
        "title": book.title,
        "author": book.author,
        "category_id": book.category_id,
        "description": book.description,
        "publication_year": book.publication_year,
        "cover_image_url": book.cover_image_url,
        "total_copies": book.total_copies,
        "available_copies": book.available_copies,
        "created_at": _iso(book.created_at),
        "categories": {"name": book.category.name} if book.category else None,
    }


def category_to_dict(category):
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "created_at": _iso(category.created_at),
    }


def profile_to_dict(profile):
    return {
        "id": profile.id,
        "email": profile.email,
        "first_name": profile.first_name,
        "last_name": profile.last_name,
        "library_card_id": profile.library_card_id,
        "role": profile.role,
        "account_status": profile.account_status,
        "total_fines": _number(profile.total_fines) or 0.0,
        "created_at": _iso(profile.created_at),
        "updated_at": _iso(profile.updated_at),
    }


def loan_to_dict(loan):
    return {
        "id": loan.id,
        "book_id": loan.book_id,
        "user_id": loan.user_id,
        "issue_date": _iso(loan.issue_date),
        "due_date": _iso(loan.due_date),
        "return_date": _iso(loan.return_date),
        "status": loan.status,
        "fine_amount": _number(loan.fine_amount),
        "notes": loan.notes,
        "books": {
            "title": loan.book.title,
            "author": loan.book.author,
            "cover_image_url": loan.book.cover_image_url,
        },
        "profiles": {
            "first_name": loan.profile.first_name,
            "last_name": loan.profile.last_name,
            "email": loan.profile.email,
        },
    }


def _use_immediate_transactions(engine):
    """
    SQLite only takes its write lock on the first write; two borrowers that
    both read first would then deadlock on upgrade. Take it on BEGIN instead.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlDataStore(DataStore):
    """Local backend: the borrow/return transactions run in this process."""

    def __init__(
        self,
        database_uri,
        loan_period_days=14,
        fine_per_day="0.50",
        fine_cap=None,
        echo=False,
    ):
        connect_args = {}
        is_sqlite = database_uri.startswith("sqlite")
        if is_sqlite:
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(
            database_uri, echo=echo, future=True, connect_args=connect_args
        )
        if is_sqlite:
            _use_immediate_transactions(self.engine)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )
        self.loan_period_days = loan_period_days
        self.fine_per_day = fine_per_day
        self.fine_cap = fine_cap

    @classmethod
    def from_config(cls, config):
        return cls(
            config["SQLALCHEMY_DATABASE_URI"],
            loan_period_days=config.get("LOAN_PERIOD_DAYS", 14),
            fine_per_day=config.get("FINE_PER_DAY", "0.50"),
            fine_cap=config.get("FINE_CAP"),
            echo=config.get("SQLALCHEMY_ECHO", False),
        )

    def create_all(self):
        Base.metadata.create_all(self.engine)

    # ----------------- catalog -----------------

    def list_books(self):
        session = self.SessionLocal()
        try:
            books = (
                session.execute(
                    select(Book).options(joinedload(Book.category)).order_by(Book.title)
                )
                .scalars()
                .all()
            )
            return [book_to_dict(b) for b in books]
        finally:
            session.close()

    def get_book(self, book_id):
        session = self.SessionLocal()
        try:
            book = session.execute(
                select(Book).options(joinedload(Book.category)).where(Book.id == book_id)
            ).scalar_one_or_none()
            return book_to_dict(book) if book else None
        finally:
            session.close()

    def list_categories(self):
        session = self.SessionLocal()
        try:
            categories = session.execute(select(Category).order_by(Category.name)).scalars().all()
            return [category_to_dict(c) for c in categories]
        finally:
            session.close()

    def add_category(self, name, description=None):
        session = self.SessionLocal()
        try:
            category = session.execute(
                select(Category).where(Category.name == name)
            ).scalar_one_or_none()
            if category is None:
                category = Category(name=name, description=description)
                session.add(category)
                session.commit()
                logger.info("Created category %s", name)
            return category_to_dict(category)
        finally:
            session.close()

    def insert_book(self, fields):
        isbn = fields["isbn"]
        total = int(fields.get("total_copies", 1))

        session = self.SessionLocal()
        try:
            if self._isbn_taken(session, isbn):
                raise DuplicateBookError(f"A book with ISBN {isbn} already exists")

            book = Book(
                isbn=isbn,
                title=fields["title"],
                author=fields["author"],
                category_id=fields.get("category_id"),
                description=fields.get("description"),
                publication_year=fields.get("publication_year"),
                cover_image_url=fields.get("cover_image_url"),
                total_copies=total,
                available_copies=total,
            )
            session.add(book)
            session.commit()
            logger.info("Added book %s (%s) with %s copies", book.isbn, book.title, total)
            return self.get_book(book.id)
        except IntegrityError as exc:
            session.rollback()
            logger.warning("Rejected book %s: %s", isbn, exc.orig)
            if "isbn" in str(exc.orig).lower():
                # Lost a race with a concurrent insert of the same ISBN.
                raise DuplicateBookError(f"A book with ISBN {isbn} already exists") from exc
            raise DataStoreError(f"Could not add book {isbn}: {exc.orig}") from exc
        finally:
            session.close()

    def _isbn_taken(self, session, isbn):
        return session.execute(select(Book.id).where(Book.isbn == isbn)).scalar_one_or_none() is not None

    # ----------------- loans -----------------

    def list_loans(self, limit=50):
        session = self.SessionLocal()
        try:
            loans = (
                session.execute(
                    select(Loan)
                    .options(joinedload(Loan.book), joinedload(Loan.profile))
                    .order_by(Loan.issue_date.desc(), Loan.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [loan_to_dict(loan) for loan in loans]
        finally:
            session.close()

    def list_active_loans(self, user_id):
        session = self.SessionLocal()
        try:
            loans = (
                session.execute(
                    select(Loan)
                    .options(joinedload(Loan.book), joinedload(Loan.profile))
                    .where(Loan.user_id == user_id, Loan.status.in_(OPEN_LOAN_STATUSES))
                    .order_by(Loan.due_date.asc())
                )
                .scalars()
                .all()
            )
            return [loan_to_dict(loan) for loan in loans]
        finally:
            session.close()

    def borrow(self, book_id, user_id, due_date=None):
        session = self.SessionLocal()
        try:
            profile = session.get(Profile, user_id)
            if profile is None:
                return BorrowResult(False, "Profile not found")
            if profile.account_status != "active":
                return BorrowResult(False, f"Account is {profile.account_status}")

            # Conditional decrement: only one caller can take the last copy.
            taken = session.execute(
                update(Book)
                .where(Book.id == book_id, Book.available_copies > 0)
                .values(available_copies=Book.available_copies - 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not taken:
                exists = session.execute(select(Book.id).where(Book.id == book_id)).scalar_one_or_none()
                session.rollback()
                if exists is None:
                    return BorrowResult(False, "Book not found")
                logger.info("Borrow of book %s by %s rejected: no copies", book_id, user_id)
                return BorrowResult(False, "No copies available")

            now = utcnow()
            loan = Loan(
                book_id=book_id,
                user_id=user_id,
                issue_date=now,
                due_date=parse_timestamp(due_date) or now + timedelta(days=self.loan_period_days),
                status="active",
            )
            session.add(loan)
            session.commit()
            logger.info("Loan %s opened: book %s -> %s, due %s", loan.id, book_id, user_id, loan.due_date)
            return BorrowResult(True, "Book borrowed", loan.id)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Borrow of book %s by %s failed", book_id, user_id)
            raise DataStoreError(str(exc)) from exc
        finally:
            session.close()

    def return_loan(self, loan_id, returned_at=None):
        session = self.SessionLocal()
        try:
            loan = session.execute(
                select(Loan).where(Loan.id == loan_id).with_for_update()
            ).scalar_one_or_none()
            if loan is None:
                return ReturnResult(False, message="Loan not found")
            if loan.status not in OPEN_LOAN_STATUSES or loan.return_date is not None:
                return ReturnResult(False, message="Loan is not active")

            now = returned_at or utcnow()
            fine = compute_fine(loan.due_date, now, self.fine_per_day, self.fine_cap)

            loan.status = "returned"
            loan.return_date = now
            loan.fine_amount = fine

            session.execute(
                update(Book)
                .where(Book.id == loan.book_id)
                .values(available_copies=Book.available_copies + 1)
                .execution_options(synchronize_session=False)
            )
            if fine:
                session.execute(
                    update(Profile)
                    .where(Profile.id == loan.user_id)
                    .values(total_fines=Profile.total_fines + fine)
                    .execution_options(synchronize_session=False)
                )

            session.commit()
            logger.info("Loan %s returned, fine %s", loan_id, fine)
            return ReturnResult(True, fine=fine, message="Book returned")
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Return of loan %s failed", loan_id)
            raise DataStoreError(str(exc)) from exc
        finally:
            session.close()

    def mark_overdue(self, now=None):
        """Flip active loans past their due date to ``overdue``."""
        session = self.SessionLocal()
        try:
            count = session.execute(
                update(Loan)
                .where(Loan.status == "active", Loan.due_date < (now or utcnow()))
                .values(status="overdue")
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()
            logger.info("Marked %s loans overdue", count)
            return count
        finally:
            session.close()

    # ----------------- profiles & identity -----------------

    def get_profile(self, user_id):
        session = self.SessionLocal()
        try:
            profile = session.get(Profile, user_id)
            return profile_to_dict(profile) if profile else None
        except SQLAlchemyError as exc:
            logger.error("Profile lookup for %s failed: %s", user_id, exc)
            raise DataStoreError(str(exc)) from exc
        finally:
            session.close()

    def create_profile(self, email, password, first_name=None, last_name=None, role="member"):
        email = email.strip().lower()
        session = self.SessionLocal()
        try:
            existing = session.execute(
                select(Profile).where(func.lower(Profile.email) == email)
            ).scalar_one_or_none()
            if existing is not None:
                raise AuthenticationError("An account with that email already exists")

            profile = Profile(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                library_card_id=f"LIB-{secrets.token_hex(4).upper()}",
                role=role,
                account_status="active",
                total_fines=0,
                password_hash=generate_password_hash(password),
            )
            session.add(profile)
            session.commit()
            logger.info("Created %s profile %s (%s)", role, profile.id, email)
            return profile_to_dict(profile)
        finally:
            session.close()

    def sign_in(self, email, password):
        session = self.SessionLocal()
        try:
            profile = session.execute(
                select(Profile).where(func.lower(Profile.email) == email.strip().lower())
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Sign-in lookup failed: %s", exc)
            raise DataStoreError(str(exc)) from exc
        finally:
            session.close()

        if profile is None or not profile.password_hash:
            raise AuthenticationError("Invalid email or password")
        if not check_password_hash(profile.password_hash, password):
            raise AuthenticationError("Invalid email or password")
        return Identity(user_id=profile.id, email=profile.email)

    def sign_up(self, email, password, first_name=None, last_name=None):
        profile = self.create_profile(email, password, first_name, last_name)
        return Identity(user_id=profile["id"], email=profile["email"])

    def resolve_identity(self, stored):
        if not stored or not stored.get("user_id"):
            return None
        profile = self.get_profile(stored["user_id"])
        if profile is None:
            return None
        return Identity(user_id=profile["id"], email=profile["email"])
