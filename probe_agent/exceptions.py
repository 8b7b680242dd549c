"""
Probe Exception Classes

Custom exceptions for the probe agent. Everything raised while handling a
controller command is converted into an ``error`` field of the response
payload by the protocol client; none of these reach the connection layer.
"""


class ProbeException(Exception):
    """Base exception for probe operations"""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(ProbeException):
    """Raised when the agent configuration is unusable"""

    def __init__(self, message: str = "Invalid probe configuration", details: dict = None):
        super().__init__(message, details)


class AllowlistValidationError(ProbeException):
    """
    Raised when SQL text fails the allowlist gate

    Codes:
        SIGNATURE_INVALID: catalog signature did not verify
        CATALOG_MISSING: no catalog received yet
        CATALOG_EXPIRED: catalog is past its expires_at
        TEMPLATE_NOT_ALLOWED: template hash is not in the catalog
    """

    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    CATALOG_MISSING = "CATALOG_MISSING"
    CATALOG_EXPIRED = "CATALOG_EXPIRED"
    TEMPLATE_NOT_ALLOWED = "TEMPLATE_NOT_ALLOWED"

    def __init__(self, message: str, code: str, details: dict = None):
        self.code = code
        super().__init__(message, details)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class SqlNotConfiguredError(ProbeException):
    """Raised when a query is requested before any SQL configuration exists"""

    def __init__(self, message: str = "SQL not configured", details: dict = None):
        super().__init__(message, details)


class UnsupportedDatabaseError(ProbeException):
    """Raised when a configuration names a database backend with no driver"""

    def __init__(self, db_type: str, details: dict = None):
        message = f"Unsupported database type: {db_type}"
        super().__init__(message, details)


class DriverNotConnectedError(ProbeException):
    """Raised when a driver is asked to execute without a live connection"""

    def __init__(self, backend: str, details: dict = None):
        message = f"{backend} not connected"
        super().__init__(message, details)


class ProjectNotConfiguredError(ProbeException):
    """Raised by file operations when no project path is configured"""

    def __init__(self, message: str = "Project path not configured", details: dict = None):
        super().__init__(message, details)


class FileAccessError(ProbeException):
    """Raised when a path resolves outside the project directory or is unreadable"""

    def __init__(self, message: str = "Access denied: path outside project directory", details: dict = None):
        super().__init__(message, details)


class RequestTimeoutError(ProbeException):
    """Raised when a request to the controller gets no response before its deadline"""

    def __init__(self, message: str = "Request to controller timed out", details: dict = None):
        super().__init__(message, details)


class ConnectionLostError(ProbeException):
    """Raised for requests still pending when the controller connection closes"""

    def __init__(self, message: str = "Connection to controller lost", details: dict = None):
        super().__init__(message, details)


class NotConnectedError(ProbeException):
    """Raised when sending while no controller connection is open"""

    def __init__(self, message: str = "Not connected to controller", details: dict = None):
        super().__init__(message, details)
