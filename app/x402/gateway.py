# app/x402/gateway.py
"""
Gateway state machine for a paid request.

A GatewayRequest lives for one inbound call. GatewayStateMachine.run() drives
it through

    Unauthorized -> Decoding -> Matching -> Verifying -> Verified
        -> Settling -> Settled -> Executing -> Completed

or into Failed(kind) from any non-terminal state. Two shortcuts exist for a
nonce this process has already settled: Matching -> Settled (the replay is
answered from the stored settlement without verifying again), then
Settled -> Completed with the stored action result, or Failed when there is
none. A replay never executes the action again. Only the authorization that
settled (same signature, value and payee) is answered this way, and only for
the price it paid; anything else presenting the nonce fails.

A failure after Settled keeps the settlement on the request, so the response
can say the caller was charged.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from x402.types import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse

from app.x402 import audit
from app.x402.codec import decode_payment_header
from app.x402.errors import PaymentErrorKind, PaymentFailure, StateTransitionError
from app.x402.matching import RequirementMatch, find_matching_requirement
from app.x402.settlement import SettlementCoordinator, SettlementRecord
from app.x402.verifier import PaymentVerifier

logger = logging.getLogger(__name__)


class GatewayState(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    DECODING = "Decoding"
    MATCHING = "Matching"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    SETTLING = "Settling"
    SETTLED = "Settled"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_STATES = frozenset({GatewayState.COMPLETED, GatewayState.FAILED})

# Failed is reachable from every non-terminal state and is not listed here.
TRANSITIONS = {
    GatewayState.UNAUTHORIZED: {GatewayState.DECODING},
    GatewayState.DECODING: {GatewayState.MATCHING},
    GatewayState.MATCHING: {GatewayState.VERIFYING, GatewayState.SETTLED},
    GatewayState.VERIFYING: {GatewayState.VERIFIED},
    GatewayState.VERIFIED: {GatewayState.SETTLING},
    GatewayState.SETTLING: {GatewayState.SETTLED},
    GatewayState.SETTLED: {GatewayState.EXECUTING, GatewayState.COMPLETED},
    GatewayState.EXECUTING: {GatewayState.COMPLETED},
}


@dataclass
class GatewayRequest:
    """Correlates one inbound call with everything the pipeline learns about it."""
    resource: str
    requirements: List[PaymentRequirements]
    payment_header: Optional[str] = None
    client_ip: str = "unknown"
    request_id: str = field(default_factory=audit.generate_request_id)
    state: GatewayState = GatewayState.UNAUTHORIZED
    history: List[GatewayState] = field(default_factory=lambda: [GatewayState.UNAUTHORIZED])
    payload: Optional[PaymentPayload] = None
    match: Optional[RequirementMatch] = None
    verification: Optional[VerifyResponse] = None
    settlement: Optional[SettlementRecord] = None
    action_result: Optional[Any] = None
    failure: Optional[PaymentFailure] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def payer(self) -> Optional[str]:
        if self.verification is not None and self.verification.payer:
            return self.verification.payer
        if self.payload is not None:
            return self.payload.payload.authorization.from_
        if self.failure is not None:
            return self.failure.payer
        return None

    @property
    def selected_requirement(self) -> Optional[PaymentRequirements]:
        return self.match.requirement if self.match is not None else None

    @property
    def receipt(self) -> Optional[SettleResponse]:
        return self.settlement.receipt if self.settlement is not None else None

    @property
    def replayed(self) -> bool:
        return self.settlement is not None and self.settlement.replayed

    def advance(self, state: GatewayState) -> None:
        """Move to `state`, rejecting transitions the machine does not define."""
        if self.is_terminal:
            raise StateTransitionError(f"Request already terminal in {self.state.value}")
        if state is not GatewayState.FAILED and state not in TRANSITIONS.get(self.state, ()):
            raise StateTransitionError(f"Illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, failure: PaymentFailure) -> "GatewayRequest":
        self.failure = failure
        self.advance(GatewayState.FAILED)
        return self


GatedAction = Callable[[GatewayRequest], Awaitable[Any]]


def _log_late_action_outcome(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"x402: Gated action failed after its timeout elapsed: {error}")
    else:
        logger.warning("x402: Gated action completed after its timeout elapsed; result recorded for replay")


class GatewayStateMachine:
    """Runs the payment pipeline and the gated action for a request."""

    def __init__(
        self,
        verifier: PaymentVerifier,
        coordinator: SettlementCoordinator,
        action_timeout_seconds: float = 120,
        strict_matching: bool = False,
    ):
        self.verifier = verifier
        self.coordinator = coordinator
        self.action_timeout_seconds = action_timeout_seconds
        self.strict_matching = strict_matching

    async def run(self, request: GatewayRequest, action: GatedAction) -> GatewayRequest:
        """
        Drive `request` to a terminal state.

        Args:
            request: Fresh request in the Unauthorized state
            action: Coroutine function executing the gated action; called at
                most once, and only after settlement succeeded

        Returns:
            The same request, now Completed or Failed
        """
        if not request.payment_header:
            return self._fail(request, PaymentFailure(
                kind=PaymentErrorKind.MISSING_PAYMENT,
                reason="X-PAYMENT header is required",
            ))

        request.advance(GatewayState.DECODING)
        decoded = decode_payment_header(request.payment_header)
        if isinstance(decoded, PaymentFailure):
            return self._fail(request, decoded)
        request.payload = decoded
        authorization = decoded.payload.authorization
        audit.log_payment_received(
            client_ip=request.client_ip,
            payer=authorization.from_,
            amount=authorization.value,
            network=decoded.network,
            nonce=authorization.nonce,
            request_id=request.request_id,
        )

        request.advance(GatewayState.MATCHING)
        match = find_matching_requirement(request.requirements, decoded, strict=self.strict_matching)
        if isinstance(match, PaymentFailure):
            return self._fail(request, match)
        request.match = match

        stored = self.coordinator.lookup(decoded, match.requirement)
        if stored is not None:
            return self._replay(request, stored)

        request.advance(GatewayState.VERIFYING)
        verification = await self.verifier.verify(decoded, match.requirement)
        if isinstance(verification, PaymentFailure):
            return self._fail(request, verification)
        request.verification = verification
        request.advance(GatewayState.VERIFIED)
        audit.log_payment_verified(request.client_ip, request.payer, request_id=request.request_id)

        request.advance(GatewayState.SETTLING)
        settlement = await self.coordinator.settle(decoded, match.requirement)
        if isinstance(settlement, PaymentFailure):
            return self._fail(request, settlement)
        request.settlement = settlement
        request.advance(GatewayState.SETTLED)

        if settlement.replayed:
            # Another request settled this nonce while we were verifying
            return self._finish_replay(request)

        audit.log_payment_settled(
            client_ip=request.client_ip,
            payer=request.payer,
            transaction_hash=settlement.receipt.transaction,
            network=settlement.network,
            amount=settlement.amount,
            request_id=request.request_id,
        )
        return await self._execute(request, action)

    async def _execute(self, request: GatewayRequest, action: GatedAction) -> GatewayRequest:
        request.advance(GatewayState.EXECUTING)
        settlement = request.settlement

        async def run_action() -> Any:
            result = await action(request)
            self.coordinator.record_action(settlement, result)
            return result

        # The action keeps running if this request is cancelled or times out;
        # a late result is still recorded against the settlement for replays.
        task = asyncio.ensure_future(run_action())
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self.action_timeout_seconds)
        except asyncio.TimeoutError:
            task.add_done_callback(_log_late_action_outcome)
            return self._action_failed(
                request, f"Action did not complete within {self.action_timeout_seconds:g}s; outcome pending"
            )
        except Exception as e:
            logger.error(f"x402: Gated action failed after settlement: {e}", exc_info=True)
            return self._action_failed(
                request, str(e) or type(e).__name__, getattr(e, "transaction_hash", None)
            )

        request.action_result = result
        request.advance(GatewayState.COMPLETED)
        audit.log_action_executed(
            client_ip=request.client_ip,
            payer=request.payer,
            transaction_hash=getattr(result, "transaction_hash", None),
            quantity=getattr(result, "quantity", None),
            recipient=getattr(result, "recipient", None),
            request_id=request.request_id,
        )
        return request

    def _replay(self, request: GatewayRequest, stored: SettlementRecord) -> GatewayRequest:
        if not stored.presented_by(request.payload):
            # Same payer and nonce, but not the authorization that was settled
            return self._fail(request, PaymentFailure(
                kind=PaymentErrorKind.INVALID_PAYMENT,
                reason="Payment does not match the authorization already settled for this nonce",
                payer=request.payload.payload.authorization.from_,
            ))
        request.settlement = stored
        if stored.ambiguous:
            return self._fail(request, PaymentFailure(
                kind=PaymentErrorKind.SETTLEMENT_AMBIGUOUS,
                reason=stored.ambiguous_reason,
                payer=stored.payer,
            ))
        request.advance(GatewayState.SETTLED)
        return self._finish_replay(request)

    def _finish_replay(self, request: GatewayRequest) -> GatewayRequest:
        settlement = request.settlement
        audit.log_payment_replayed(
            client_ip=request.client_ip,
            payer=settlement.payer,
            nonce=settlement.key[2],
            transaction_hash=settlement.receipt.transaction if settlement.receipt else None,
            request_id=request.request_id,
        )
        if not settlement.priced_as(request.selected_requirement):
            return self._fail(request, PaymentFailure(
                kind=PaymentErrorKind.PAYMENT_ALREADY_CONSUMED,
                reason="Payment nonce already settled for a different request",
                payer=settlement.payer,
            ))
        if settlement.action_result is None:
            return self._fail(request, PaymentFailure(
                kind=PaymentErrorKind.PAYMENT_ALREADY_CONSUMED,
                reason="Payment nonce already settled; no completed action to return",
                payer=settlement.payer,
            ))
        logger.info(f"x402: Replayed nonce {settlement.key[2]}; returning stored action result")
        request.action_result = settlement.action_result
        request.advance(GatewayState.COMPLETED)
        return request

    def _action_failed(
        self,
        request: GatewayRequest,
        reason: str,
        action_transaction: Optional[str] = None,
    ) -> GatewayRequest:
        receipt = request.receipt
        audit.log_action_failed(
            client_ip=request.client_ip,
            payer=request.payer,
            error_message=reason,
            settlement_transaction=receipt.transaction if receipt else None,
            action_transaction=action_transaction,
            request_id=request.request_id,
        )
        return self._fail(request, PaymentFailure(
            kind=PaymentErrorKind.ACTION_EXECUTION_FAILED,
            reason=reason,
            payer=request.payer,
        ))

    def _fail(self, request: GatewayRequest, failure: PaymentFailure) -> GatewayRequest:
        logger.warning(f"x402: Request {request.request_id} failed in {request.state.value}: "
                       f"{failure.kind.value}: {failure.reason}")
        audit.log_payment_failed(
            client_ip=request.client_ip,
            kind=failure.kind.value,
            reason=failure.reason,
            charged=failure.charged,
            wallet_address=failure.payer or request.payer,
            request_id=request.request_id,
        )
        return request.fail(failure)
