"""
Custom Exceptions for GuestPass Application

This module defines custom exception classes that provide specific
error handling for different failure scenarios in the GuestPass system.
Each exception carries an HTTP status so route handlers can convert
it into a response without a lookup table.
"""


class GuestPassException(Exception):
    """
    Base exception for GuestPass application

    All custom exceptions in the GuestPass system should inherit
    from this base class for consistent error handling.
    """

    status_code = 500

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize GuestPass exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class NotFoundException(GuestPassException):
    """Raised when a requested resource does not exist"""

    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")
        self.resource = resource
        self.resource_id = resource_id


class EventNotFoundException(NotFoundException):
    """
    Raised when an event is not found in the system

    This exception is thrown when reading, updating or scanning
    against an event that doesn't exist.
    """

    def __init__(self, event_id: str):
        super().__init__("Event", event_id)
        self.event_id = event_id


class GuestNotFoundException(NotFoundException):
    """
    Raised when a guest is not found in the system

    This exception is thrown when generating a QR code for, or
    updating, a guest that doesn't exist.
    """

    def __init__(self, guest_id: str):
        super().__init__("Guest", guest_id)
        self.guest_id = guest_id


class AuthenticationFailedException(GuestPassException):
    """
    Raised when authentication fails

    This exception is thrown when sign-in credentials are rejected
    by the session store or a protected route is hit without a session.
    """

    status_code = 401

    def __init__(self, reason: str = None):
        """
        Initialize authentication failed exception

        Args:
            reason: Optional reason reported by the session store
        """
        if reason:
            message = f"Authentication failed: {reason}"
        else:
            message = "Authentication failed - invalid credentials"
        super().__init__(message, "AUTH_FAILED")
        self.reason = reason


class DataValidationException(GuestPassException):
    """
    Raised when data validation fails

    This exception is thrown when input data doesn't meet
    the required validation criteria.
    """

    status_code = 400

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize data validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error


class PersistenceException(GuestPassException):
    """
    Raised when the backing store rejects a read or write

    Covers both validation failures reported by the store and
    transient network failures. Callers may retry.
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize persistence exception

        Args:
            operation: The operation that failed (e.g., 'save_display_name')
            details: Detailed error information
        """
        message = f"Persistence error during {operation}: {details}"
        super().__init__(message, "PERSISTENCE_ERROR")
        self.operation = operation
        self.details = details


class SignOutException(GuestPassException):
    """
    Raised after a sign-out whose remote revocation failed

    The local session has already been cleared when this is raised;
    it only informs the caller that the server-side session may
    still be valid.
    """

    status_code = 400

    def __init__(self, details: str):
        message = f"Sign out could not be confirmed by the server: {details}"
        super().__init__(message, "SIGN_OUT_ERROR")
        self.details = details


class InvalidAuthTransitionException(GuestPassException):
    """Raised when an auth operation is attempted from the wrong phase"""

    status_code = 409

    def __init__(self, operation: str, phase: str):
        message = f"Cannot {operation} while auth state is {phase}"
        super().__init__(message, "INVALID_AUTH_TRANSITION")
        self.operation = operation
        self.phase = phase


class ConcurrentUpdateException(GuestPassException):
    """Raised when a second display-name update starts while one is in flight"""

    status_code = 409

    def __init__(self, operation: str):
        message = f"A {operation} call is already in progress"
        super().__init__(message, "CONCURRENT_UPDATE")
        self.operation = operation


class QRCodeGenerationException(GuestPassException):
    """Raised when the QR image for a guest cannot be rendered"""

    def __init__(self, guest_id: str, reason: str):
        message = f"Failed to generate QR code for guest '{guest_id}': {reason}"
        super().__init__(message, "QR_GENERATION_ERROR")
        self.guest_id = guest_id
        self.reason = reason
