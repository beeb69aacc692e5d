"""Exception types raised by the TravelPact managers.

Every error carries a message fit to show the user as-is; there are no
structured error codes.
"""

from typing import Optional


class TravelPactError(Exception):
    """Base class for recoverable errors surfaced to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(TravelPactError):
    """Backend configuration is unusable; raised at startup."""


class BackendError(TravelPactError):
    """A REST call to the backend failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotAuthenticatedError(TravelPactError):
    def __init__(self, message: str = "You must be logged in to do that"):
        super().__init__(message)


class ConnectionExistsError(TravelPactError):
    def __init__(self, message: str = "Connection already exists"):
        super().__init__(message)


class RouteCreationError(TravelPactError):
    def __init__(self, message: str = "Failed to create route"):
        super().__init__(message)


class InvalidTransitionError(TravelPactError):
    """A pact membership status change that the state machine forbids."""


class PhotoAnalysisError(TravelPactError):
    """Photo analysis could not start or could not sync its results."""
