"""Typed errors for the billing core.

Every error carries a machine-readable ``code`` so the HTTP layer and batch
summaries never have to parse messages:

    BillingError
    +-- NotFoundError          NOT_FOUND         user/course/payment/enrollment missing
    +-- InvalidArgumentError   INVALID_ARGUMENT  bad enum value, wrong course type, missing field
    +-- ConflictError          CONFLICT          delete of a PAID payment, duplicate enrollment
    +-- InvalidStateError      INVALID_STATE     transition not allowed from the current status
"""


class BillingError(Exception):
    code = "BILLING_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class NotFoundError(BillingError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidArgumentError(BillingError):
    code = "INVALID_ARGUMENT"


class ConflictError(BillingError):
    code = "CONFLICT"


class InvalidStateError(BillingError):
    code = "INVALID_STATE"

    def __init__(self, message: str, current_status=None):
        self.current_status = current_status
        super().__init__(message)
