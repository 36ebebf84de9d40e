class EscrowError(Exception):
    code = "EscrowError"


class NotFoundError(EscrowError):
    code = "NotFound"


class InsufficientFundsError(EscrowError):
    code = "InsufficientFunds"


class PayoutNotReadyError(EscrowError):
    code = "PayoutNotReady"


class CommandValidationError(EscrowError):
    code = "ValidationError"


class ForbiddenTransitionError(EscrowError):
    code = "ForbiddenTransition"


class DuplicateCausationError(EscrowError):
    code = "DuplicateCausation"


class GatewayUnavailableError(EscrowError):
    code = "GatewayUnavailable"


class InvalidSignatureError(EscrowError):
    code = "InvalidSignature"


class UnparseablePayloadError(EscrowError):
    code = "UnparseablePayload"


class StalledNeedsOperatorError(EscrowError):
    code = "StalledNeedsOperator"

    def __init__(self, task_id: str, subject: str, attempts: int):
        super().__init__(f"Reconciliation of {subject} stalled after {attempts} attempts")
        self.task_id = task_id
        self.subject = subject
        self.attempts = attempts
