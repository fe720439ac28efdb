class MonitorError(Exception):
    """Base class for every error raised by the monitor engine."""


class AuthenticationError(MonitorError):
    """Login failed on every dialect that was tried."""

    def __init__(self, message, failures=None):
        super().__init__(message)
        self.failures = failures or {}


class TransportError(MonitorError):
    """Non-success HTTP response (or network failure) from the controller."""

    def __init__(self, message, status_code=None, body="", path=""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.path = path


class SessionExpiredError(TransportError):
    """Controller kept rejecting the session after one re-authentication."""
