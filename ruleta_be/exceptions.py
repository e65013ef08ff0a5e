from ruleta_be.error_codes import ErrorCodes

class AppException(Exception):
    def __init__(self, error_code, status_message, status_code, details=None, action_button=None):
        super().__init__(status_message)
        self.error_code = error_code
        self.status_message = status_message
        self.status_code = status_code
        self.details = details if details is not None else {}
        self.action_button = action_button if action_button is not None else {}

class ValidationException(AppException):
    def __init__(self, status_message="Validation failed", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.VALIDATION_ERROR,
            status_message=status_message,
            status_code=422,
            details=details,
            action_button=action_button
        )

class AuthenticationException(AppException):
    def __init__(self, status_message="Authentication required", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.UNAUTHENTICATED,
            status_message=status_message,
            status_code=401,
            details=details,
            action_button=action_button
        )

class AuthorizationException(AppException):
    def __init__(self, status_message="Forbidden", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.FORBIDDEN,
            status_message=status_message,
            status_code=403,
            details=details,
            action_button=action_button
        )

class NotFoundException(AppException):
    def __init__(self, status_message="Resource not found", details=None, action_button=None, error_code=ErrorCodes.NOT_FOUND):
        super().__init__(
            error_code=error_code,
            status_message=status_message,
            status_code=404,
            details=details,
            action_button=action_button
        )

class MesaNotFoundException(NotFoundException):
    def __init__(self, status_message="Mesa not found", details=None, action_button=None):
        super().__init__(
            status_message=status_message,
            details=details,
            action_button=action_button,
            error_code=ErrorCodes.MESA_NOT_FOUND
        )

class ConflictException(AppException):
    """Request clashes with the current table state. Callers may retry with a different choice."""
    def __init__(self, status_message="Conflict", details=None, action_button=None, error_code=ErrorCodes.CONFLICT):
        super().__init__(
            error_code=error_code,
            status_message=status_message,
            status_code=409,
            details=details,
            action_button=action_button
        )

class MesaClosedException(ConflictException):
    def __init__(self, status_message="This mesa is no longer accepting bets", details=None, action_button=None):
        super().__init__(
            status_message=status_message,
            details=details,
            action_button=action_button,
            error_code=ErrorCodes.MESA_CLOSED
        )

class SectorOccupiedException(ConflictException):
    def __init__(self, status_message="Sector already taken", details=None, action_button=None):
        super().__init__(
            status_message=status_message,
            details=details,
            action_button=action_button,
            error_code=ErrorCodes.SECTOR_OCCUPIED
        )

class DuplicateBetException(ConflictException):
    def __init__(self, status_message="You already hold a sector in this mesa", details=None, action_button=None):
        super().__init__(
            status_message=status_message,
            details=details,
            action_button=action_button,
            error_code=ErrorCodes.DUPLICATE_BET
        )

class ResultRejectedException(ConflictException):
    def __init__(self, status_message="Result rejected", details=None, action_button=None):
        super().__init__(
            status_message=status_message,
            details=details,
            action_button=action_button,
            error_code=ErrorCodes.RESULT_REJECTED
        )

class InsufficientFundsException(AppException):
    def __init__(self, status_message="Insufficient funds", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.INSUFFICIENT_FUNDS,
            status_message=status_message,
            status_code=400,
            details=details,
            action_button=action_button
        )

class BalanceServiceUnavailableException(AppException):
    def __init__(self, status_message="Balance service unavailable, bet not accepted", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.SERVICE_UNAVAILABLE,
            status_message=status_message,
            status_code=503,
            details=details,
            action_button=action_button
        )

class InternalServerErrorException(AppException):
    def __init__(self, status_message="Internal server error", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
            status_message=status_message,
            status_code=500,
            details=details,
            action_button=action_button
        )

class CreditFailedError(Exception):
    """A prize credit could not be applied. Retried by the settlement retry queue."""
    pass
