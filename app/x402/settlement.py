# app/x402/settlement.py
"""
At-most-once settlement of verified payments.

Settlement is the point past which funds move. The coordinator guarantees that
this process submits at most one facilitator settle call per
(payer, asset, nonce):

- The first caller for a key starts a settlement task and registers it in the
  in-flight map. Any caller arriving while it runs awaits the same task.
- Callers await the task through asyncio.shield, so an abandoned HTTP request
  never cancels a settlement that has already been submitted.
- Successful and ambiguous outcomes are kept for X402_REPLAY_TTL_SECONDS so a
  replayed nonce is answered from the stored record instead of re-settling.
- Failures where no funds moved (facilitator said no, or could not be reached
  at all) are not kept: the caller may retry with a fresh payload.

Registration happens without an await between the lookup and the insert, so
the event loop itself is the per-key serialization point.
"""
import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import httpx
from x402.facilitator import FacilitatorClient
from x402.types import PaymentPayload, PaymentRequirements, SettleResponse

from app.x402 import audit
from app.x402.errors import PaymentErrorKind, PaymentFailure
from app.x402.verifier import effective_timeout

logger = logging.getLogger(__name__)

SettlementKey = Tuple[str, str, str]


def settlement_key(payment_payload: PaymentPayload, requirement: PaymentRequirements) -> SettlementKey:
    """(payer, asset, nonce), lower-cased."""
    authorization = payment_payload.payload.authorization
    return (
        authorization.from_.lower(),
        requirement.asset.lower(),
        authorization.nonce.lower(),
    )


@dataclass
class SettlementRecord:
    """
    Outcome of one settlement, shared by every request presenting the same nonce.

    `replayed` is set on the copy handed to callers that did not submit the
    settlement themselves. `signature`, `pay_to` and `required_amount` identify
    the authorization and the price it settled, so a replay can be checked
    against them.
    """
    key: SettlementKey
    network: str
    amount: str
    settled_at: float
    receipt: Optional[SettleResponse] = None
    ambiguous_reason: Optional[str] = None
    action_result: Optional[Any] = None
    replayed: bool = False
    signature: Optional[str] = None
    pay_to: Optional[str] = None
    required_amount: Optional[str] = None

    @property
    def payer(self) -> str:
        return self.key[0]

    @property
    def ambiguous(self) -> bool:
        return self.ambiguous_reason is not None

    def presented_by(self, payment_payload: PaymentPayload) -> bool:
        """Whether `payment_payload` carries the authorization that was settled."""
        exact = payment_payload.payload
        return (
            self.signature is not None
            and exact.signature.lower() == self.signature.lower()
            and exact.authorization.value == self.amount
            and exact.authorization.to.lower() == (self.pay_to or "").lower()
        )

    def priced_as(self, requirement: PaymentRequirements) -> bool:
        """Whether the settled price is the price `requirement` asks for."""
        return requirement.max_amount_required == self.required_amount


class SettlementCoordinator:
    """Submits verified payments for settlement exactly once per nonce."""

    def __init__(
        self,
        facilitator_client: FacilitatorClient,
        default_timeout_seconds: float = 30,
        replay_ttl_seconds: float = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self._facilitator_client = facilitator_client
        self._default_timeout_seconds = default_timeout_seconds
        self._replay_ttl_seconds = replay_ttl_seconds
        self._clock = clock
        self._records: Dict[SettlementKey, SettlementRecord] = {}
        self._inflight: Dict[SettlementKey, "asyncio.Future"] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def lookup(
        self,
        payment_payload: PaymentPayload,
        requirement: PaymentRequirements,
    ) -> Optional[SettlementRecord]:
        """Return the stored record for a payload's nonce, as a replayed copy."""
        self._prune()
        record = self._records.get(settlement_key(payment_payload, requirement))
        if record is None:
            return None
        return dataclasses.replace(record, replayed=True)

    def record_action(self, record: SettlementRecord, action_result: Any) -> None:
        """Attach the gated action's result to the stored settlement record."""
        stored = self._records.get(record.key)
        if stored is not None:
            stored.action_result = action_result
        record.action_result = action_result

    async def settle(
        self,
        payment_payload: PaymentPayload,
        requirement: PaymentRequirements,
    ) -> Union[SettlementRecord, PaymentFailure]:
        """
        Settle a verified payload.

        Returns:
            The SettlementRecord (replayed=True when another request settled
            this nonce), or a PaymentFailure of kind SettlementFailed,
            FacilitatorUnavailable or SettlementAmbiguous
        """
        key = settlement_key(payment_payload, requirement)
        self._prune()

        existing = self._records.get(key)
        if existing is not None:
            logger.info(f"x402: Nonce {key[2]} from {key[0]} already settled; returning stored outcome")
            return self._observe(existing)

        task = self._inflight.get(key)
        originator = task is None
        if originator:
            task = asyncio.ensure_future(self._submit(key, payment_payload, requirement))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            logger.info(f"x402: Settlement for nonce {key[2]} already in flight; awaiting it")

        outcome = await asyncio.shield(task)

        if isinstance(outcome, PaymentFailure) or originator:
            return outcome
        return self._observe(outcome)

    def _observe(self, record: SettlementRecord) -> Union[SettlementRecord, PaymentFailure]:
        if record.ambiguous:
            return PaymentFailure(
                kind=PaymentErrorKind.SETTLEMENT_AMBIGUOUS,
                reason=record.ambiguous_reason,
                payer=record.payer,
            )
        return dataclasses.replace(record, replayed=True)

    async def _submit(
        self,
        key: SettlementKey,
        payment_payload: PaymentPayload,
        requirement: PaymentRequirements,
    ) -> Union[SettlementRecord, PaymentFailure]:
        payer = key[0]
        timeout = effective_timeout(requirement, self._default_timeout_seconds)
        logger.info(f"x402: Settling payment from {payer} on {requirement.network} (timeout {timeout:g}s)")

        try:
            response = await asyncio.wait_for(
                self._facilitator_client.settle(payment_payload, requirement),
                timeout=timeout,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # Nothing reached the facilitator
            logger.error(f"x402: Facilitator unreachable for settlement: {e}")
            return PaymentFailure(
                kind=PaymentErrorKind.FACILITATOR_UNAVAILABLE,
                reason=f"Facilitator unreachable: {e}",
                payer=payer,
            )
        except asyncio.TimeoutError:
            return self._record_ambiguous(
                key, payment_payload, requirement,
                f"Settlement timed out after {timeout:g}s; outcome unknown",
            )
        except (httpx.HTTPError, ValueError, TypeError) as e:
            audit.log_error(
                None,
                "facilitator_settle_error",
                str(e) or type(e).__name__,
                {"payer": payer, "nonce": key[2], "network": requirement.network, "exception": type(e).__name__},
            )
            return self._record_ambiguous(
                key, payment_payload, requirement,
                f"Settlement response could not be read: {e}",
            )

        if not isinstance(response, SettleResponse):
            return self._record_ambiguous(
                key, payment_payload, requirement,
                "Facilitator returned a malformed settlement response",
            )

        if not response.success:
            logger.warning(f"x402: Settlement rejected for {payer}: {response.error_reason}")
            return PaymentFailure(
                kind=PaymentErrorKind.SETTLEMENT_FAILED,
                reason=response.error_reason or "Settlement failed",
                payer=response.payer or payer,
            )

        record = self._new_record(
            key, payment_payload, requirement,
            network=response.network or requirement.network,
            receipt=response,
        )
        self._records[key] = record
        logger.info(f"x402: Payment settled, transaction {response.transaction}")
        return record

    def _record_ambiguous(
        self,
        key: SettlementKey,
        payment_payload: PaymentPayload,
        requirement: PaymentRequirements,
        reason: str,
    ) -> PaymentFailure:
        logger.error(f"x402: Settlement for nonce {key[2]} from {key[0]} is ambiguous: {reason}")
        self._records[key] = self._new_record(
            key, payment_payload, requirement,
            network=requirement.network,
            ambiguous_reason=reason,
        )
        return PaymentFailure(kind=PaymentErrorKind.SETTLEMENT_AMBIGUOUS, reason=reason, payer=key[0])

    def _new_record(
        self,
        key: SettlementKey,
        payment_payload: PaymentPayload,
        requirement: PaymentRequirements,
        **outcome: Any,
    ) -> SettlementRecord:
        exact = payment_payload.payload
        return SettlementRecord(
            key=key,
            amount=exact.authorization.value,
            settled_at=self._clock(),
            signature=exact.signature,
            pay_to=exact.authorization.to,
            required_amount=requirement.max_amount_required,
            **outcome,
        )

    def _prune(self) -> None:
        cutoff = self._clock() - self._replay_ttl_seconds
        expired = [key for key, record in self._records.items() if record.settled_at < cutoff]
        for key in expired:
            del self._records[key]
