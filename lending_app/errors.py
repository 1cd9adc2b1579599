"""Error taxonomy shared by the lending engine, catalog and auth layers.

Every error carries a stable ``code`` and the HTTP ``status_code`` its kind
maps to, so the transport layer can render any of them with a single
exception handler:

- ``NotFoundError`` (404): the book or loan record does not exist.
- ``ConflictError`` (409): the request is well formed but the current state
  forbids it; clients may retry later.
- ``ForbiddenError`` (403): the loan belongs to someone else.
- ``ValidationError`` (400): the request itself must be fixed.
- ``AuthenticationError`` (401): missing, wrong or expired credentials.
- ``StoreFailure`` (500): the underlying storage failed.
"""

from __future__ import annotations


class LendingError(Exception):
    """Base class for all errors raised by the application core."""

    code = "lending_error"
    status_code = 500
    default_message = "Lending operation failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class NotFoundError(LendingError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found"


class ConflictError(LendingError):
    code = "conflict"
    status_code = 409
    default_message = "Request conflicts with the current state"


class ForbiddenError(LendingError):
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class ValidationError(LendingError):
    code = "invalid"
    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(LendingError):
    code = "not_authenticated"
    status_code = 401
    default_message = "Authentication required"


class StoreFailure(LendingError):
    """Raised when the persistence layer fails for a reason not otherwise classified."""

    code = "store_failure"
    status_code = 500
    default_message = "Storage failure"


# --- Not found ---
class BookNotFound(NotFoundError):
    code = "book_not_found"
    default_message = "Book not found"


class LoanNotFound(NotFoundError):
    code = "loan_not_found"
    default_message = "Lending record not found"


# --- Conflicts ---
class DuplicateActiveLoan(ConflictError):
    code = "duplicate_active_loan"
    default_message = "You have already borrowed this book"


class WeeklyLimitExceeded(ConflictError):
    code = "weekly_limit_exceeded"
    default_message = "Borrowing limit exceeded: maximum 5 books per week"


class BookUnavailable(ConflictError):
    code = "book_unavailable"
    default_message = "Book is not available for borrowing"


class AlreadyReturned(ConflictError):
    code = "already_returned"
    default_message = "Book has already been returned"


class DuplicateISBN(ConflictError):
    code = "duplicate_isbn"
    default_message = "Book with this ISBN already exists"


class QuantityBelowActiveLoans(ConflictError):
    code = "quantity_below_active_loans"
    default_message = "Quantity cannot be lower than the number of copies currently on loan"


class BookHasLoans(ConflictError):
    code = "book_has_loans"
    default_message = "Book has lending records and cannot be deleted"


class EmailAlreadyRegistered(ConflictError):
    code = "email_taken"
    default_message = "User with this email already exists"


# --- Forbidden ---
class NotOwner(ForbiddenError):
    code = "not_owner"
    default_message = "This lending record does not belong to you"


# --- Validation ---
class InvalidPagination(ValidationError):
    code = "invalid_pagination"
    default_message = "page and page size must be positive integers"


class InvalidBookData(ValidationError):
    code = "invalid_book"
    default_message = "Invalid book data"


class InvalidCredentialsFormat(ValidationError):
    code = "invalid_credentials_format"
    default_message = "Invalid email or password format"


# --- Authentication ---
class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"
    default_message = "Invalid email or password"


class InvalidToken(AuthenticationError):
    code = "invalid_token"
    default_message = "Invalid or expired token"
