SEARCH_FIELDS = ("title", "author", "isbn")


def matches(book, query):
    needle = (query or "").strip().lower()
    if not needle:
        return True
    return any(needle in str(book.get(field) or "").lower() for field in SEARCH_FIELDS)


def filter_books(books, query):
    """Case-insensitive substring match over title, author and ISBN.

    An empty or blank query keeps every book.
    """
    return [book for book in books if matches(book, query)]
