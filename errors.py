class LibraryError(Exception):
    """Base for every failure a request can end with.

    Each kind carries the HTTP status it is reported with and a short
    machine readable code.
    """

    status_code = 400
    code = 'error'
    message = 'Request failed'

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class InvalidRequest(LibraryError):
    code = 'invalid_request'
    message = 'Invalid request'


class Unauthorized(LibraryError):
    status_code = 401
    code = 'unauthorized'
    message = 'Authentication required'


class AccountInactive(LibraryError):
    status_code = 403
    code = 'account_inactive'
    message = 'Account is inactive'


class NotFound(LibraryError):
    status_code = 404
    code = 'not_found'
    message = 'Not found'


class AlreadyBorrowed(LibraryError):
    status_code = 409
    code = 'already_borrowed'
    message = 'You have already borrowed this book'


class NoCopiesAvailable(LibraryError):
    status_code = 409
    code = 'no_copies_available'
    message = 'No copies of this book are available'


class NotBorrowed(LibraryError):
    status_code = 409
    code = 'not_borrowed'
    message = 'Book is not currently borrowed'


class RenewalLimitReached(LibraryError):
    status_code = 409
    code = 'renewal_limit_reached'
    message = 'Maximum renewal limit reached'


class BookInUse(LibraryError):
    status_code = 409
    code = 'book_in_use'
    message = 'Book has borrowing records and cannot be deleted'


class EmailTaken(LibraryError):
    status_code = 409
    code = 'email_taken'
    message = 'Email already registered'


class BookExists(LibraryError):
    status_code = 409
    code = 'book_exists'
    message = 'A book with this Google Books id already exists'


class InvariantViolation(LibraryError):
    status_code = 500
    code = 'invariant_violation'
    message = 'Inventory is inconsistent'


class CatalogUnavailable(LibraryError):
    status_code = 502
    code = 'catalog_unavailable'
    message = 'Failed to fetch books from Google Books'


class Busy(LibraryError):
    status_code = 503
    code = 'busy'
    message = 'The library is busy, please retry'
