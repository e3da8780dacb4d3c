from typing import Iterable


class ReconcilerException(Exception):
    """Base exception for all reconciler-related errors."""
    pass

class MalformedDescriptor(ReconcilerException):
    """Raised when the local descriptor is missing, unreadable or invalid."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed descriptor {path}: {reason}")

class RemoteNotFound(ReconcilerException):
    """Raised when the hosting platform has no repository with the given identifier."""
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Repository '{identifier}' was not found.")

class RemoteUnauthorized(ReconcilerException):
    """Raised when credentials are missing, invalid or lack the required scope."""
    pass

class RemoteUnavailable(ReconcilerException):
    """Raised on transient network or service failures once retries are exhausted."""
    pass

class RemoteRejected(ReconcilerException):
    """Raised when the hosting platform refuses a specific update (e.g. HTTP 422)."""
    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"Rejected by remote ({status}): {message}")

class PropagationTimeout(ReconcilerException):
    """Raised when applied fields are still not visible remotely after the grace period."""
    def __init__(self, fields: Iterable[str], grace_period: float):
        self.fields = sorted(fields)
        self.grace_period = grace_period
        super().__init__(
            f"Fields still diverging after {grace_period:g}s grace period: {', '.join(self.fields)}"
        )
