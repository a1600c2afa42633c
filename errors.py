class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailure(LedgerError, ValueError):
    status_code = 400


class Unauthorized(LedgerError):
    status_code = 401


class Blocked(LedgerError):
    status_code = 403


class NotFound(LedgerError, ValueError):
    status_code = 404


class Conflict(LedgerError):
    status_code = 409


class RateLimited(LedgerError):
    status_code = 429


class ExternalServiceError(LedgerError, RuntimeError):
    status_code = 502
