class ErrorCodes:
    GENERIC_ERROR = "GENERIC_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Roulette table errors
    CONFLICT = "CONFLICT"
    MESA_NOT_FOUND = "MESA_NOT_FOUND"
    MESA_CLOSED = "MESA_CLOSED"
    SECTOR_OCCUPIED = "SECTOR_OCCUPIED"
    DUPLICATE_BET = "DUPLICATE_BET"
    RESULT_REJECTED = "RESULT_REJECTED"
