"""Domain errors raised by the lifecycle managers.

Every error here is recoverable and caller-facing: the HTTP boundary maps
each class to a 4xx status (see ``main.setup_error_handlers``). Anything
else escaping a service is treated as a fatal persistence failure.
"""

from typing import Dict, Optional


class EngineError(Exception):
    """Base class for lifecycle engine errors."""

    status_code = 400
    code = "ENGINE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """A required field is missing or malformed, or a policy rejects the input."""

    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}


class NotFoundError(EngineError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(EngineError):
    status_code = 409
    code = "CONFLICT"


class DuplicateApplicationError(ConflictError):
    code = "DUPLICATE_APPLICATION"

    def __init__(self, message: str = "You have already applied to this job"):
        super().__init__(message)


class DuplicateActiveContractError(ConflictError):
    code = "DUPLICATE_ACTIVE_CONTRACT"

    def __init__(
        self,
        message: str = "An active contract already exists for this talent and job.",
    ):
        super().__init__(message)


class NotWithdrawableError(ConflictError):
    code = "NOT_WITHDRAWABLE"

    def __init__(self, message: str = "Cannot withdraw this application"):
        super().__init__(message)


class NotRefundableError(ConflictError):
    code = "NOT_REFUNDABLE"

    def __init__(self, message: str = "Only completed payments can be refunded"):
        super().__init__(message)


class AuthorizationError(EngineError):
    status_code = 403
    code = "ACCESS_DENIED"

    def __init__(self, message: str = "Access denied."):
        super().__init__(message)


class InvalidTransitionError(EngineError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_status: Optional[str], to_status: str):
        if from_status is None:
            message = f"Invalid {entity} status: {to_status}"
        else:
            message = f"Cannot move {entity} from '{from_status}' to '{to_status}'"
        super().__init__(message)
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
