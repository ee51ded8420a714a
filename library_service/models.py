from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)

Base = declarative_base()

LOAN_STATUSES = ("active", "returned", "overdue")
OPEN_LOAN_STATUSES = ("active", "overdue")
ROLES = ("admin", "member")
ACCOUNT_STATUSES = ("active", "suspended", "closed")


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo so we never store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    books = relationship("Book", back_populates="category")


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_books_total_copies"),
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_books_available_copies",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"))
    description = Column(Text)
    publication_year = Column(Integer)
    cover_image_url = Column(String(512))
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)

    category = relationship("Category", back_populates="books")


class Profile(Base):
    """
    A library patron or administrator. The id is the session identity.
    """
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True)
    first_name = Column(String(255))
    last_name = Column(String(255))
    library_card_id = Column(String(32), unique=True)
    role = Column(Enum(*ROLES, name="app_role"), nullable=False, default="member")
    account_status = Column(
        Enum(*ACCOUNT_STATUSES, name="account_status_type"),
        nullable=False,
        default="active",
    )
    total_fines = Column(Numeric(10, 2), nullable=False, default=0)
    password_hash = Column(String(255))  # only used by the local backend
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    loans = relationship("Loan", back_populates="profile")


class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    issue_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    status = Column(
        Enum(*LOAN_STATUSES, name="loan_status_type"),
        nullable=False,
        default="active",
    )
    fine_amount = Column(Numeric(10, 2))
    notes = Column(Text)

    book = relationship("Book")
    profile = relationship("Profile", back_populates="loans")
