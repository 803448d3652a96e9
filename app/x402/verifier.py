# app/x402/verifier.py
"""
Payment verification via the x402 facilitator.

The facilitator is trusted to check the authorization signature, the payer's
balance, the validity window and that the nonce has not been consumed. Before
calling it, cheap local checks reject payloads that can never verify (expired,
not yet valid, underpaying, paying someone else) without a network round trip.

Verification never mutates state. A facilitator that cannot be reached, times
out or answers with something that is not a VerifyResponse is reported as
FacilitatorUnavailable, which is distinct from an invalid payment.
"""
import asyncio
import logging
import time
from typing import Callable, Optional, Union

import httpx
from x402.facilitator import FacilitatorClient
from x402.types import PaymentPayload, PaymentRequirements, VerifyResponse

from app.x402 import audit
from app.x402.errors import PaymentErrorKind, PaymentFailure

logger = logging.getLogger(__name__)

# Local pre-check reasons
REASON_INSUFFICIENT_VALUE = "insufficient_value"
REASON_EXPIRED = "authorization_expired"
REASON_NOT_YET_VALID = "authorization_not_yet_valid"
REASON_PAYEE_MISMATCH = "payee_mismatch"


def effective_timeout(requirement: PaymentRequirements, default_seconds: float) -> float:
    """Timeout for a remote call made on behalf of a requirement."""
    if requirement.max_timeout_seconds and requirement.max_timeout_seconds > 0:
        return float(requirement.max_timeout_seconds)
    return float(default_seconds)


def precheck_authorization(
    payment_payload: PaymentPayload,
    requirement: PaymentRequirements,
    now: Optional[int] = None,
) -> Optional[str]:
    """
    Check the parts of an authorization that need no signature or chain access.

    Returns:
        An invalid reason, or None when the payload passes
    """
    authorization = payment_payload.payload.authorization
    now = int(time.time()) if now is None else now

    if int(authorization.valid_before) <= now:
        return REASON_EXPIRED
    if int(authorization.valid_after) > now:
        return REASON_NOT_YET_VALID
    if int(authorization.value) < int(requirement.max_amount_required):
        return REASON_INSUFFICIENT_VALUE
    if authorization.to.lower() != requirement.pay_to.lower():
        return REASON_PAYEE_MISMATCH
    return None


class PaymentVerifier:
    """Verifies payloads against a requirement through the facilitator."""

    def __init__(
        self,
        facilitator_client: FacilitatorClient,
        default_timeout_seconds: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        self._facilitator_client = facilitator_client
        self._default_timeout_seconds = default_timeout_seconds
        self._clock = clock

    async def verify(
        self,
        payment_payload: PaymentPayload,
        requirement: PaymentRequirements,
    ) -> Union[VerifyResponse, PaymentFailure]:
        """
        Verify a payload against the selected requirement.

        Returns:
            The facilitator's VerifyResponse when valid, otherwise a
            PaymentFailure of kind InvalidPayment or FacilitatorUnavailable
        """
        payer = payment_payload.payload.authorization.from_

        reason = precheck_authorization(payment_payload, requirement, now=int(self._clock()))
        if reason is not None:
            logger.warning(f"x402: Payment from {payer} rejected before facilitator call: {reason}")
            return PaymentFailure(kind=PaymentErrorKind.INVALID_PAYMENT, reason=reason, payer=payer)

        timeout = effective_timeout(requirement, self._default_timeout_seconds)
        try:
            response = await asyncio.wait_for(
                self._facilitator_client.verify(payment_payload, requirement),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"x402: Facilitator verification timed out after {timeout}s")
            return PaymentFailure(
                kind=PaymentErrorKind.FACILITATOR_UNAVAILABLE,
                reason=f"Facilitator verification timed out after {timeout:g}s",
                payer=payer,
            )
        except (httpx.HTTPError, ValueError, TypeError) as e:
            # ValueError: undecodable JSON or pydantic validation errors.
            # TypeError: a JSON body that is not an object.
            logger.error(f"x402: Facilitator verification failed: {e}")
            audit.log_error(
                None,
                "facilitator_verify_error",
                str(e) or type(e).__name__,
                {"payer": payer, "network": requirement.network, "exception": type(e).__name__},
            )
            return PaymentFailure(
                kind=PaymentErrorKind.FACILITATOR_UNAVAILABLE,
                reason=f"Facilitator verification failed: {e}",
                payer=payer,
            )

        if not isinstance(response, VerifyResponse):
            logger.error(f"x402: Facilitator returned unexpected verification response: {response!r}")
            return PaymentFailure(
                kind=PaymentErrorKind.FACILITATOR_UNAVAILABLE,
                reason="Facilitator returned a malformed verification response",
                payer=payer,
            )

        if not response.is_valid:
            logger.warning(f"x402: Payment verification failed: {response.invalid_reason}")
            return PaymentFailure(
                kind=PaymentErrorKind.INVALID_PAYMENT,
                reason=response.invalid_reason or "Unknown reason",
                payer=response.payer or payer,
            )

        logger.info(f"x402: Payment verified for payer {response.payer or payer}")
        return response
