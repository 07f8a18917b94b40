"""Typed failures raised by the account, login and machine-id operations.

Every error carries a stable ``code`` the command surface returns to the
caller, plus the HTTP status it maps to.

>>> err = ProviderError("social", "HTTP 503", retriable=True)
>>> err.code, err.retriable, err.provider
('PROVIDER_ERROR', True, 'social')
>>> isinstance(GuidConflict("x"), KiroAccountsError)
True
"""

from typing import Optional


class KiroAccountsError(Exception):
    """Base class for all account-manager failures."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail

    def to_dict(self) -> dict:
        """Error envelope body for API responses.

        >>> ParseError("bad url").to_dict()
        {'message': 'bad url', 'code': 'PARSE_ERROR'}
        """
        body = {"message": self.message, "code": self.code}
        if self.detail:
            body["detail"] = self.detail
        return body


class ParseError(KiroAccountsError):
    """Malformed callback URL or launch arguments."""

    code = "PARSE_ERROR"
    http_status = 400


class CorrelationMismatch(KiroAccountsError):
    """Callback state does not match the pending login."""

    code = "CORRELATION_MISMATCH"
    http_status = 403


class AlreadyPending(KiroAccountsError):
    """A login handshake is already in flight."""

    code = "ALREADY_PENDING"
    http_status = 409


class NoPendingLogin(KiroAccountsError):
    """No login handshake is waiting for a callback."""

    code = "NO_PENDING_LOGIN"
    http_status = 409


class LoginCancelled(KiroAccountsError):
    code = "LOGIN_CANCELLED"
    http_status = 409


class Expired(KiroAccountsError):
    """A pending login or a token is past its deadline."""

    code = "EXPIRED"
    http_status = 410


class ProviderError(KiroAccountsError):
    """Network or provider-side failure.

    ``retriable`` marks failures (timeouts, 429, 5xx) a caller may retry
    with bounded backoff.
    """

    code = "PROVIDER_ERROR"
    http_status = 502

    def __init__(
        self,
        provider: str,
        message: str = "",
        *,
        retriable: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(f"{provider}: {message}" if message else provider)
        self.provider = provider
        self.retriable = retriable
        self.status_code = status_code

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["provider"] = self.provider
        body["retriable"] = self.retriable
        return body


class GuidConflict(KiroAccountsError):
    """Machine id is already bound to a different account."""

    code = "GUID_CONFLICT"
    http_status = 409


class InvalidFormat(KiroAccountsError):
    """Malformed machine id, import document, or provider payload."""

    code = "INVALID_FORMAT"
    http_status = 422


class StoreIOError(KiroAccountsError):
    """Persistence failed; the operation was rolled back."""

    code = "STORE_IO_ERROR"
    http_status = 500


class AccountNotFound(KiroAccountsError):
    code = "NOT_FOUND"
    http_status = 404


class DuplicateAccount(KiroAccountsError):
    code = "DUPLICATE_ACCOUNT"
    http_status = 409
