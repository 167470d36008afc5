"""
Cast Error Taxonomy

Every error raised by the cast subsystem derives from CastError and
carries the HTTP status the API layer answers with.

    CastError
    ├── ValidationError          malformed input, never retried
    ├── NotFoundError            no device / unknown id / nothing to retry
    ├── TransientNetworkError    connect failure, DNS failure, refused
    │   ├── NetworkTimeoutError  a time-bounded call ran out of time
    │   └── DeviceProtocolError  receiver launch or load rejected
    ├── CastCancelledError       start aborted by a concurrent stop
    ├── UpstreamServiceError     live status prober failure
    └── RetryExhaustedError      every retry attempt failed
"""

from typing import Optional


class CastError(Exception):
    """Base exception for the cast subsystem."""
    http_status = 500


class ValidationError(CastError):
    """Input rejected synchronously."""
    http_status = 400


class NotFoundError(CastError):
    """Referenced entity does not exist or nothing is available."""
    http_status = 404


class TransientNetworkError(CastError):
    """Network path failure; eligible for manual retry."""
    http_status = 503


class NetworkTimeoutError(TransientNetworkError):
    """A time-bounded network call did not complete."""
    http_status = 408


class DeviceProtocolError(TransientNetworkError):
    """The device rejected a launch, load or stop request."""
    http_status = 502


class CastCancelledError(CastError):
    """A start sequence was aborted by a concurrent stop."""
    http_status = 409


class UpstreamServiceError(CastError):
    """The live status prober failed (quota, auth, network)."""
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryExhaustedError(CastError):
    """All retry attempts failed."""
    http_status = 503

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
