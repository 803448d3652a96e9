# app/x402/errors.py
"""
Failure taxonomy for the x402 payment pipeline.

Every pipeline component reports a failure by returning a PaymentFailure
instead of raising. The gateway state machine consumes these uniformly and
the response layer maps each kind to an HTTP status and a "charged" flag:

- Up to and including verification: 402, the caller may retry with a
  corrected payload.
- FacilitatorUnavailable / SettlementFailed: 5xx, no funds moved, safe to retry.
- SettlementAmbiguous: 5xx, charge state unknown, needs reconciliation.
- PaymentAlreadyConsumed / ActionExecutionFailed: funds moved, the gated
  action did not complete for this request, needs operator reconciliation.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PaymentErrorKind(str, Enum):
    """Kinds of payment pipeline failures."""
    MISSING_PAYMENT = "MissingPayment"
    MALFORMED_PAYLOAD = "MalformedPayload"
    NO_MATCHING_REQUIREMENT = "NoMatchingRequirement"
    INVALID_PAYMENT = "InvalidPayment"
    FACILITATOR_UNAVAILABLE = "FacilitatorUnavailable"
    SETTLEMENT_FAILED = "SettlementFailed"
    SETTLEMENT_AMBIGUOUS = "SettlementAmbiguous"
    PAYMENT_ALREADY_CONSUMED = "PaymentAlreadyConsumed"
    ACTION_EXECUTION_FAILED = "ActionExecutionFailed"


# kind -> (HTTP status, charged). None means the charge state is unknown.
_KIND_POLICY = {
    PaymentErrorKind.MISSING_PAYMENT: (402, False),
    PaymentErrorKind.MALFORMED_PAYLOAD: (402, False),
    PaymentErrorKind.NO_MATCHING_REQUIREMENT: (402, False),
    PaymentErrorKind.INVALID_PAYMENT: (402, False),
    PaymentErrorKind.FACILITATOR_UNAVAILABLE: (503, False),
    PaymentErrorKind.SETTLEMENT_FAILED: (502, False),
    PaymentErrorKind.SETTLEMENT_AMBIGUOUS: (502, None),
    PaymentErrorKind.PAYMENT_ALREADY_CONSUMED: (409, True),
    PaymentErrorKind.ACTION_EXECUTION_FAILED: (500, True),
}


def http_status_for(kind: PaymentErrorKind) -> int:
    """HTTP status code a failure of this kind is reported with."""
    return _KIND_POLICY[kind][0]


def charged_for(kind: PaymentErrorKind) -> Optional[bool]:
    """Whether funds moved for a failure of this kind (None = unknown)."""
    return _KIND_POLICY[kind][1]


def is_payment_challenge(kind: PaymentErrorKind) -> bool:
    """True if the failure is answered with a 402 challenge."""
    return http_status_for(kind) == 402


@dataclass(frozen=True)
class PaymentFailure:
    """
    Result value returned by pipeline components when a step fails.

    Attributes:
        kind: Taxonomy kind of the failure
        reason: Human or facilitator supplied reason string
        payer: Payer address, when it could be resolved
    """
    kind: PaymentErrorKind
    reason: str
    payer: Optional[str] = None

    @property
    def status_code(self) -> int:
        return http_status_for(self.kind)

    @property
    def charged(self) -> Optional[bool]:
        return charged_for(self.kind)


class RequirementCatalogError(ValueError):
    """Raised when a price or asset cannot be turned into payment requirements."""
    pass


class ConfigurationError(RuntimeError):
    """Raised at startup when the gateway cannot be wired from settings."""
    pass


class StateTransitionError(RuntimeError):
    """Raised when the gateway state machine is driven through an illegal transition."""
    pass
