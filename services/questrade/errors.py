"""
Domain errors for the Questrade integration.

Every error carries a stable ``code`` which the API error handler turns into a
user-facing message and recovery suggestions.
"""
from typing import Optional

TOKEN_EXPIRED = "TOKEN_EXPIRED"
TOKEN_INVALID = "TOKEN_INVALID"
TOKEN_MISSING = "TOKEN_MISSING"
API_CONNECTION_FAILED = "API_CONNECTION_FAILED"
PERSON_NOT_FOUND = "PERSON_NOT_FOUND"
REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
QUESTRADE_API_ERROR = "QUESTRADE_API_ERROR"
SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
PERSON_INACTIVE = "PERSON_INACTIVE"


class QuestradeError(Exception):
    code: str = QUESTRADE_API_ERROR
    status_code: int = 400

    def __init__(self, message: str, *, person_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.person_name = person_name


class TokenMissingError(QuestradeError):
    code = TOKEN_MISSING
    status_code = 401


class TokenInvalidError(QuestradeError):
    code = TOKEN_INVALID
    status_code = 401


class TokenDecryptionError(QuestradeError):
    code = TOKEN_INVALID
    status_code = 401


class QuestradeAPIError(QuestradeError):
    code = QUESTRADE_API_ERROR

    def __init__(self, status: int, detail: str, *, person_name: Optional[str] = None):
        super().__init__(f"Questrade API error ({status}): {detail}", person_name=person_name)
        self.status = status
        self.detail = detail


class QuestradeConnectionError(QuestradeError):
    code = API_CONNECTION_FAILED
    status_code = 503


class QuestradeUnavailableError(QuestradeError):
    code = API_CONNECTION_FAILED
    status_code = 503


class PersonNotFoundError(QuestradeError):
    code = PERSON_NOT_FOUND
    status_code = 404


class PersonInactiveError(QuestradeError):
    code = PERSON_INACTIVE
    status_code = 400


class SyncInProgressError(QuestradeError):
    code = SYNC_IN_PROGRESS
    status_code = 409


AUTH_ERRORS = (TokenMissingError, TokenInvalidError, TokenDecryptionError, PersonNotFoundError, PersonInactiveError)


def is_transient_error(exc: BaseException) -> bool:
    """Network failures, 5xx and 429 are worth retrying; anything else will fail the same way again."""
    if isinstance(exc, (QuestradeConnectionError, QuestradeUnavailableError)):
        return True
    return isinstance(exc, QuestradeAPIError) and (exc.status >= 500 or exc.status == 429)


def is_auth_error(exc: BaseException) -> bool:
    if isinstance(exc, AUTH_ERRORS):
        return True
    return isinstance(exc, QuestradeAPIError) and exc.status in (401, 403)
