"""Error taxonomy shared by every HPoints service."""


class HPointsError(Exception):
    code = "HPOINTS_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(HPointsError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(HPointsError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransitionError(HPointsError):
    code = "INVALID_TRANSITION"
    status_code = 409


class InsufficientBalanceError(HPointsError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 400

    def __init__(self, message: str, balance: int = 0, required: int = 0):
        super().__init__(message)
        self.balance = balance
        self.required = required


class UnavailableError(HPointsError):
    code = "UNAVAILABLE"
    status_code = 400


class ConflictError(HPointsError):
    code = "CONFLICT"
    status_code = 409


class ForbiddenError(HPointsError):
    code = "FORBIDDEN"
    status_code = 403


class UnauthorizedError(HPointsError):
    code = "UNAUTHORIZED"
    status_code = 401
