"""Exception hierarchy and HTTP error mapping for cdsync."""

from typing import Any, Dict, Optional


class CloudSyncError(Exception):
    """Base exception for cdsync.

    Attributes:
        details: Optional structured information (HTTP status, account, path)
        cause: Optional original exception that triggered this error
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.cause = cause


class TransientError(CloudSyncError):
    """Raised for failures that are expected to go away on retry."""


class RateLimitError(TransientError):
    """Raised when rate-limited (HTTP 429 or quota-flavoured 403)."""


class ServiceUnavailableError(TransientError):
    """Raised for 5xx responses."""


class NetworkError(TransientError):
    """Raised when network/timeout issues prevent the request."""


class PermissionDeniedError(CloudSyncError):
    """Raised when access is denied (HTTP 403 non-quota)."""


class NotFoundError(CloudSyncError):
    """Raised when a remote item is not found (HTTP 404)."""


class ConflictError(CloudSyncError):
    """Raised when a name conflict occurs (HTTP 409/412)."""


class InvalidArgumentError(CloudSyncError):
    """Raised when request arguments are invalid (HTTP 400)."""


class AuthError(CloudSyncError):
    """Raised when a provider rejects the account's credentials."""


class ApiError(CloudSyncError):
    """Raised for unclassified API errors."""


class UnsupportedOperationError(CloudSyncError):
    """Raised when a provider lacks a capability (e.g. ownership transfer)."""


class SyncRootNotFoundError(CloudSyncError):
    """Raised when an account has no sync root folder."""


class AmbiguousSyncRootError(CloudSyncError):
    """Raised when an account has more than one sync root folder.

    Never resolved automatically; the operator has to remove the extra
    folders by hand.
    """


class CorruptFragmentSetError(CloudSyncError):
    """Raised when a fragmented replica cannot be reassembled."""


class InsufficientSpaceError(CloudSyncError):
    """Raised when backup accounts cannot absorb the requested data."""


class DeadlineExceededError(CloudSyncError):
    """Raised when a long-running command runs past its deadline."""


class ConfigError(CloudSyncError):
    """Raised when configuration or the metadata store cannot be used."""


_QUOTA_REASON_KEYWORDS = (
    "quota",
    "ratelimitexceeded",
    "userratelimitexceeded",
    "throttled",
    "activitylimitreached",
)


def _is_quota_reason(reason: Optional[str]) -> bool:
    if not reason:
        return False
    return any(key in reason.lower() for key in _QUOTA_REASON_KEYWORDS)


def map_http_error(
    status_code: int,
    reason: Optional[str] = None,
    message: Optional[str] = None,
    *,
    details: Optional[Dict[str, Any]] = None,
    cause: Optional[BaseException] = None,
) -> CloudSyncError:
    """Map an HTTP failure to a cdsync exception.

    Policy:
        - 400 -> InvalidArgumentError
        - 401 -> AuthError
        - 403 -> PermissionDeniedError, RateLimitError if quota/throttle related
        - 404 -> NotFoundError
        - 409/412 -> ConflictError
        - 429 -> RateLimitError
        - 5xx -> ServiceUnavailableError
        - otherwise -> ApiError
    """
    info: Dict[str, Any] = {'status_code': status_code, 'reason': reason}
    if details:
        info.update(details)

    text = message or f"HTTP error {status_code}"

    if status_code == 400:
        return InvalidArgumentError(text, details=info, cause=cause)
    if status_code == 401:
        return AuthError(text, details=info, cause=cause)
    if status_code == 403:
        if _is_quota_reason(reason):
            return RateLimitError(text, details=info, cause=cause)
        return PermissionDeniedError(text, details=info, cause=cause)
    if status_code == 404:
        return NotFoundError(text, details=info, cause=cause)
    if status_code in (409, 412):
        return ConflictError(text, details=info, cause=cause)
    if status_code == 429:
        return RateLimitError(text, details=info, cause=cause)
    if 500 <= status_code <= 599:
        return ServiceUnavailableError(text, details=info, cause=cause)

    return ApiError(text, details=info, cause=cause)
