class StagePassError(Exception):
    status_code = 400
    code = "ERROR"

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class InvalidInput(StagePassError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(StagePassError):
    status_code = 404
    code = "NOT_FOUND"


class VotingClosed(StagePassError):
    status_code = 409
    code = "VOTING_CLOSED"


class SoldOut(StagePassError):
    status_code = 409
    code = "INSUFFICIENT_TICKETS"


class AmountMismatch(StagePassError):
    status_code = 409
    code = "AMOUNT_MISMATCH"


class Conflict(StagePassError):
    status_code = 409
    code = "CONFLICT"


class RateLimited(StagePassError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class GatewayError(StagePassError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"
