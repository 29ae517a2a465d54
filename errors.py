"""Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``main.py`` turns them into JSON responses with the
matching status code.  Business-rule refusals on loans are not exceptions,
see ``loans.LoanLedger.create_loan``.
"""

from http import HTTPStatus


class LibraryError(Exception):
    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    status_code = HTTPStatus.BAD_REQUEST


class UnauthorizedError(LibraryError):
    status_code = HTTPStatus.UNAUTHORIZED


class ForbiddenError(LibraryError):
    status_code = HTTPStatus.FORBIDDEN


class NotFoundError(LibraryError):
    status_code = HTTPStatus.NOT_FOUND


class ConflictError(LibraryError):
    status_code = HTTPStatus.CONFLICT


class InternalError(LibraryError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
