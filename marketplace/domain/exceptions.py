

class MarketplaceError(Exception):
    """
    Base exception for all errors raised on the marketplace write path.

    ``code`` and ``status_code`` drive the error envelope returned to callers.
    """

    code = "MARKETPLACE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Raised when a request is malformed or outside domain limits."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(MarketplaceError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} {identifier} not found",
            details={"entity": entity, "id": identifier},
        )


class InvalidStateTransitionError(MarketplaceError):
    """
    Raised when an illegal state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message, details={"from": from_state, "to": to_state})


class IdempotencyConflictError(MarketplaceError):
    """Raised when an idempotent request conflicts with previous data."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class DomainRuleViolation(MarketplaceError):
    """Raised when a business rule rejects an otherwise well-formed request."""

    code = "DOMAIN_RULE_VIOLATION"
    status_code = 400


class InsufficientFundsError(DomainRuleViolation):
    """Raised when a wallet cannot cover a debit."""

    code = "INSUFFICIENT_FUNDS"


class PaymentVerificationError(DomainRuleViolation):
    code = "PAYMENT_VERIFICATION_FAILED"


class PointsAwardError(MarketplaceError):
    """Raised by the points service when an award is rejected."""

    code = "POINTS_AWARD_FAILED"
    status_code = 400


class PersistenceFailure(MarketplaceError):
    """Raised when the database rejects a write or is unreachable."""

    code = "PERSISTENCE_FAILURE"
    status_code = 500


class PaymentProviderNotConfigured(MarketplaceError):
    code = "PAYMENT_PROVIDER_NOT_CONFIGURED"
    status_code = 500


class AuditFailure(MarketplaceError):
    """
    Raised when the audit log write fails after the domain write committed.

    The committed write is not undone; the request is still reported as failed.
    """

    code = "AUDIT_FAILURE"
    status_code = 500
