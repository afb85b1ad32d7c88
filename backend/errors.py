"""Error types raised while talking to the remote canvas and running templates."""
import logging
import time
from typing import Optional


class PlacerError(Exception):
    """Base error carrying an HTTP status for the API layer"""
    code = "placer_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.timestamp = time.time()

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NetworkError(PlacerError):
    """Edge-layer failure: rate limit, challenge page, bad gateway, rejected session"""
    code = "network_error"
    status_code = 502


class AuthError(PlacerError):
    """The remote service rejected the stored credentials"""
    code = "auth_error"
    status_code = 401


class RefreshTokenError(PlacerError):
    """The paint token was rejected; retry with a fresh one"""
    code = "refresh_token"
    status_code = 403

    def __init__(self, message: str = "Token expired or invalid.", painted: int = 0):
        super().__init__(message)
        self.painted = painted


class SuspensionError(PlacerError):
    code = "suspended"
    status_code = 451

    def __init__(self, message: str, duration_ms: int, now: Optional[float] = None):
        super().__init__(message)
        self.duration_ms = duration_ms
        self.suspended_until = (now if now is not None else time.time()) + duration_ms / 1000.0

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["duration_ms"] = self.duration_ms
        data["suspended_until"] = self.suspended_until
        return data


class UnexpectedResponseError(PlacerError):
    code = "unexpected_response"
    status_code = 502


EXPECTED_ERRORS = (NetworkError, AuthError, SuspensionError)


def log_account_error(logger: logging.Logger, error: BaseException, account_id, account_name: str, context: str):
    """Log a failure for an account; operational failures get one line, bugs get a traceback"""
    prefix = f"({account_name}#{account_id}) {context}"
    if isinstance(error, SuspensionError):
        logger.warning(f"{prefix}: account suspended for {error.duration_ms / 1000:.0f}s")
    elif isinstance(error, EXPECTED_ERRORS):
        logger.warning(f"{prefix}: {error}")
    else:
        logger.error(f"{prefix}: {error}", exc_info=error)
