"""Exception classes for connector configuration and status handling."""

from __future__ import annotations


class ConnectorControlError(Exception):
    """Base exception for all connector-control errors."""
    pass


class ValidationError(ConnectorControlError):
    """Raised when a required field is missing or a config breaks a policy.

    Always raised before any network call is made.
    """

    def __init__(self, message: str, field: str = None, **kwargs):
        super().__init__(message)
        self.field = field
        self.details = kwargs


class NotFoundError(ConnectorControlError):
    """Raised when a connector, pipeline or registry version does not exist."""

    def __init__(self, message: str, resource_type: str = None, resource_id: str = None, **kwargs):
        super().__init__(message)
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.details = kwargs


class TransientNetworkError(ConnectorControlError):
    """Fetch or parse failure talking to an external system."""

    def __init__(self, message: str, url: str = None, **kwargs):
        super().__init__(message)
        self.url = url
        self.details = kwargs


class ExternalServiceUnavailable(ConnectorControlError):
    """Raised when an optional external service (the registry) cannot be reached."""

    def __init__(self, message: str, service: str = None, **kwargs):
        super().__init__(message)
        self.service = service
        self.details = kwargs


class CommandRejected(ConnectorControlError):
    """Raised when the orchestration API refuses a command (success: false).

    The message is meant to be shown to the operator verbatim.
    """

    def __init__(self, message: str, command: str = None, connector_name: str = None, **kwargs):
        super().__init__(message)
        self.command = command
        self.connector_name = connector_name
        self.details = kwargs
