from typing import Any, Dict, Optional


class QuickBooksError(Exception):
    """Base class for every failure the invoice layer reports to callers."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class MissingConfigurationError(QuickBooksError):
    status_code = 500


class MissingParameterError(QuickBooksError):
    status_code = 400


class UpstreamAuthError(QuickBooksError):
    status_code = 502


class RefreshFailedError(QuickBooksError):
    status_code = 401


class AuthenticationStateError(QuickBooksError):
    """The stored credential is absent or unusable; the user has to reconnect."""

    status_code = 401


class NotAuthenticatedError(AuthenticationStateError):
    pass


class AuthenticationRequiredError(AuthenticationStateError):
    pass


class AuthenticationExpiredError(AuthenticationStateError):
    pass


class NotFoundError(QuickBooksError):
    status_code = 404


class UpstreamUnavailableError(QuickBooksError):
    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message, details)
        self.code = code


class InvalidUpstreamResponseError(QuickBooksError):
    status_code = 502


class UnknownToolError(QuickBooksError):
    status_code = 404


class StrategyTimeout(QuickBooksError):
    """A strategy (or the whole ladder) did not finish inside its time budget."""

    status_code = 504
