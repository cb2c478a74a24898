"""Inventory ledger for book copies.

``available_copies`` is a counter kept next to ``total_copies``; it must
always equal the total minus the number of active borrowings. Every change
to either column goes through this module and runs inside the caller's
transaction. Nothing here commits.
"""
import logging

from models import db, Book, Borrowing
from policy import BORROWED
import errors

log = logging.getLogger(__name__)

# sqlite names the column, postgres the constraint
DUPLICATE_BOOK = {
    'books.google_book_id': errors.BookExists,
    'books_google_book_id_key': errors.BookExists,
}


def _locked_book(book_id):
    book = Book.query.filter_by(id=book_id).with_for_update().first()
    if book is None:
        raise errors.NotFound('Book not found')
    return book


def reserve_copy(book_id):
    book = _locked_book(book_id)
    if book.available_copies <= 0:
        raise errors.NoCopiesAvailable()
    # guarded decrement holds even where FOR UPDATE is a no-op (sqlite)
    updated = Book.query.filter(
        Book.id == book_id, Book.available_copies > 0
    ).update(
        {Book.available_copies: Book.available_copies - 1},
        synchronize_session=False,
    )
    if updated != 1:
        raise errors.NoCopiesAvailable()
    db.session.refresh(book)
    log.info('reserved copy of book %s, %s left', book_id, book.available_copies)
    return book


def release_copy(book_id):
    book = _locked_book(book_id)
    if book.available_copies >= book.total_copies:
        raise errors.InvariantViolation(
            'Book %s already has all %s copies available' % (book_id, book.total_copies)
        )
    updated = Book.query.filter(
        Book.id == book_id, Book.available_copies < Book.total_copies
    ).update(
        {Book.available_copies: Book.available_copies + 1},
        synchronize_session=False,
    )
    if updated != 1:
        raise errors.InvariantViolation()
    db.session.refresh(book)
    log.info('released copy of book %s, %s available', book_id, book.available_copies)
    return book


def _copies(value):
    try:
        value = int(value)
    except (TypeError, ValueError):
        value = -1
    if value < 0:
        raise errors.InvalidRequest('total_copies must be a non-negative integer')
    return value


def active_borrow_count(book_id):
    return Borrowing.query.filter_by(book_id=book_id, status=BORROWED).count()


def adjust_total_copies(book_id, total_copies):
    """Change the number of copies the library owns.

    ``available_copies`` is recomputed from the active borrowings instead of
    being taken from the caller.
    """
    total_copies = _copies(total_copies)
    book = _locked_book(book_id)
    active = active_borrow_count(book_id)
    if total_copies < active:
        raise errors.InvalidRequest(
            'Cannot reduce copies below the %s currently borrowed' % active
        )
    book.total_copies = total_copies
    book.available_copies = total_copies - active
    db.session.flush()
    log.info('book %s now has %s copies, %s available', book_id, total_copies, book.available_copies)
    return book


def create_book(title, total_copies=1, **fields):
    if not title:
        raise errors.InvalidRequest('title required')
    total_copies = _copies(total_copies)
    book = Book(title=title, total_copies=total_copies, available_copies=total_copies, **fields)
    db.session.add(book)
    db.session.flush()
    return book
