# Demo data for the local backend (`flask --app library_service.app seed-demo`).
import logging

from .datastore import AuthenticationError, DuplicateBookError

logger = logging.getLogger(__name__)

CATEGORIES = [
    {"name": "Software Engineering", "description": "Craft, design and architecture"},
    {"name": "Computer Science", "description": "Algorithms and systems"},
    {"name": "Infrastructure", "description": "Operations, containers and the cloud"},
]

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "category": "Software Engineering",
        "publication_year": 2008,
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "category": "Software Engineering",
        "publication_year": 1999,
    },
    {
        "isbn": "978-0131103627",
        "title": "The C Programming Language",
        "author": "Brian W. Kernighan, Dennis M. Ritchie",
        "category": "Computer Science",
        "publication_year": 1988,
    },
    {
        "isbn": "978-0134685991",
        "title": "Effective Java",
        "author": "Joshua Bloch",
        "category": "Software Engineering",
        "publication_year": 2018,
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "category": "Computer Science",
        "publication_year": 2009,
    },
    {
        "isbn": "978-0134494166",
        "title": "Clean Architecture",
        "author": "Robert C. Martin",
        "category": "Software Engineering",
        "publication_year": 2017,
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "category": "Computer Science",
        "publication_year": 2017,
    },
    {
        "isbn": "978-1617296086",
        "title": "Kubernetes in Action",
        "author": "Marko Luksa",
        "category": "Infrastructure",
        "publication_year": 2017,
    },
]

DEMO_ACCOUNTS = [
    {
        "email": "admin@libraryhub.local",
        "password": "admin-password",
        "first_name": "Ada",
        "last_name": "Librarian",
        "role": "admin",
    },
    {
        "email": "member@libraryhub.local",
        "password": "member-password",
        "first_name": "Sam",
        "last_name": "Reader",
        "role": "member",
    },
]


def seed_demo(store):
    counts = {"categories": 0, "books": 0, "profiles": 0}

    category_ids = {}
    for category in CATEGORIES:
        row = store.add_category(category["name"], category["description"])
        category_ids[row["name"]] = row["id"]
        counts["categories"] += 1

    for i, book in enumerate(BOOKS, start=1):
        fields = {k: v for k, v in book.items() if k != "category"}
        fields["category_id"] = category_ids.get(book["category"])
        # vary copies per title to make availability more interesting
        fields["total_copies"] = 1 + (i % 4)  # 1-4 copies
        try:
            store.insert_book(fields)
            counts["books"] += 1
        except DuplicateBookError:
            logger.info("Skipping %s, already present", book["isbn"])

    for account in DEMO_ACCOUNTS:
        try:
            store.create_profile(**account)
            counts["profiles"] += 1
        except AuthenticationError:
            logger.info("Skipping %s, already present", account["email"])

    return counts
