# tests/test_x402_gateway.py
"""
Unit tests for the gateway state machine.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from x402.types import SettleResponse, VerifyResponse

from app.core.config import Settings
from app.services.ledger import LedgerActionError
from app.x402.catalog import build_mint_requirements
from app.x402.errors import PaymentErrorKind, StateTransitionError
from app.x402.gateway import (
    GatewayRequest,
    GatewayState,
    GatewayStateMachine,
    TERMINAL_STATES,
)
from app.x402.settlement import SettlementCoordinator
from app.x402.verifier import PaymentVerifier
from helpers import PAY_TO, PAYER, SETTLE_TX, encode_header, payment_dict, payment_header

S = GatewayState
HAPPY_PATH = [
    S.UNAUTHORIZED, S.DECODING, S.MATCHING, S.VERIFYING, S.VERIFIED,
    S.SETTLING, S.SETTLED, S.EXECUTING, S.COMPLETED,
]


@pytest.fixture
def requirements():
    settings = Settings(X402_PAY_TO_ADDRESS=PAY_TO, X402_NETWORKS=["base", "base-sepolia"])
    return build_mint_requirements(settings, "https://gateway.example.com/api/v1/mint/")


@pytest.fixture
def facilitator():
    client = MagicMock()
    client.verify = AsyncMock(return_value=VerifyResponse(is_valid=True, invalid_reason=None, payer=PAYER))
    client.settle = AsyncMock(return_value=SettleResponse(success=True, transaction=SETTLE_TX, network="base"))
    return client


def make_gateway(facilitator, **kwargs) -> GatewayStateMachine:
    return GatewayStateMachine(
        PaymentVerifier(facilitator),
        SettlementCoordinator(facilitator),
        **kwargs,
    )


class RecordingAction:
    """Gated action that records its calls."""

    def __init__(self, result="minted", error=None, delay=0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self, request):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class TestGatewayRequest:
    """Test the transition table."""

    def test_initial_state(self, requirements):
        request = GatewayRequest(resource="r", requirements=requirements)
        assert request.state is S.UNAUTHORIZED
        assert request.history == [S.UNAUTHORIZED]
        assert len(request.request_id) == 8

    def test_illegal_transition(self, requirements):
        """Steps cannot be skipped."""
        request = GatewayRequest(resource="r", requirements=requirements)
        with pytest.raises(StateTransitionError):
            request.advance(S.SETTLING)

    def test_terminal_states_are_final(self, requirements):
        request = GatewayRequest(resource="r", requirements=requirements)
        request.advance(S.FAILED)
        with pytest.raises(StateTransitionError):
            request.advance(S.DECODING)

    def test_failed_reachable_from_any_non_terminal_state(self, requirements):
        for state in S:
            if state in TERMINAL_STATES:
                continue
            request = GatewayRequest(resource="r", requirements=requirements, state=state)
            request.advance(S.FAILED)
            assert request.is_terminal


class TestGatewayRun:
    """Test end-to-end runs of the state machine."""

    def test_successful_payment(self, requirements, facilitator):
        """Verified and settled payments execute the action once."""
        gateway = make_gateway(facilitator)
        action = RecordingAction()
        request = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())

        result = asyncio.run(gateway.run(request, action))

        assert result.state is S.COMPLETED
        assert result.history == HAPPY_PATH
        assert result.action_result == "minted"
        assert result.payer == PAYER
        assert result.receipt.transaction == SETTLE_TX
        assert result.replayed is False
        assert action.calls == 1

    def test_missing_header(self, requirements, facilitator):
        gateway = make_gateway(facilitator)
        action = RecordingAction()

        result = asyncio.run(gateway.run(GatewayRequest(resource="r", requirements=requirements), action))

        assert result.state is S.FAILED
        assert result.history == [S.UNAUTHORIZED, S.FAILED]
        assert result.failure.kind is PaymentErrorKind.MISSING_PAYMENT
        assert action.calls == 0

    def test_malformed_header(self, requirements, facilitator):
        gateway = make_gateway(facilitator)
        request = GatewayRequest(resource="r", requirements=requirements, payment_header="%%%")

        result = asyncio.run(gateway.run(request, RecordingAction()))

        assert result.history == [S.UNAUTHORIZED, S.DECODING, S.FAILED]
        assert result.failure.kind is PaymentErrorKind.MALFORMED_PAYLOAD
        facilitator.verify.assert_not_awaited()

    def test_matches_second_network(self, requirements, facilitator):
        gateway = make_gateway(facilitator)
        request = GatewayRequest(
            resource="r", requirements=requirements, payment_header=payment_header(network="base-sepolia")
        )

        result = asyncio.run(gateway.run(request, RecordingAction()))

        assert result.match.index == 1
        assert facilitator.verify.await_args.args[1] is requirements[1]

    def test_strict_matching_rejects_unknown_scheme(self, requirements, facilitator):
        gateway = make_gateway(facilitator, strict_matching=True)
        request = GatewayRequest(
            resource="r", requirements=requirements, payment_header=payment_header(scheme="upto")
        )

        result = asyncio.run(gateway.run(request, RecordingAction()))

        assert result.failure.kind is PaymentErrorKind.NO_MATCHING_REQUIREMENT
        assert result.history[-2] is S.MATCHING

    def test_invalid_payment_not_settled(self, requirements, facilitator):
        """Invalid payments fail before any settlement is attempted."""
        facilitator.verify.return_value = VerifyResponse(
            is_valid=False, invalid_reason="invalid_signature", payer=PAYER
        )
        gateway = make_gateway(facilitator)
        action = RecordingAction()
        request = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())

        result = asyncio.run(gateway.run(request, action))

        assert result.failure.kind is PaymentErrorKind.INVALID_PAYMENT
        assert result.failure.reason == "invalid_signature"
        assert result.history[-2] is S.VERIFYING
        facilitator.settle.assert_not_awaited()
        assert action.calls == 0

    def test_settlement_failure_skips_action(self, requirements, facilitator):
        facilitator.settle.return_value = SettleResponse(
            success=False, network="base", error_reason="insufficient_funds"
        )
        gateway = make_gateway(facilitator)
        action = RecordingAction()
        request = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())

        result = asyncio.run(gateway.run(request, action))

        assert result.failure.kind is PaymentErrorKind.SETTLEMENT_FAILED
        assert result.failure.charged is False
        assert result.history[-2] is S.SETTLING
        assert action.calls == 0

    def test_ambiguous_settlement_skips_action(self, requirements, facilitator):
        facilitator.settle.side_effect = httpx.ReadTimeout("read timed out")
        gateway = make_gateway(facilitator)
        action = RecordingAction()
        request = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())

        result = asyncio.run(gateway.run(request, action))

        assert result.failure.kind is PaymentErrorKind.SETTLEMENT_AMBIGUOUS
        assert result.failure.charged is None
        assert action.calls == 0

    def test_action_failure_after_settlement(self, requirements, facilitator):
        """A failed action still reports the settlement and that funds moved."""
        gateway = make_gateway(facilitator)
        action = RecordingAction(error=LedgerActionError("reverted", transaction_hash="0xmint"))
        request = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())

        result = asyncio.run(gateway.run(request, action))

        assert result.state is S.FAILED
        assert result.history[-2] is S.EXECUTING
        assert result.failure.kind is PaymentErrorKind.ACTION_EXECUTION_FAILED
        assert result.failure.charged is True
        assert result.failure.reason == "reverted"
        assert result.receipt.transaction == SETTLE_TX

    def test_action_timeout(self, requirements, facilitator):
        """An action slower than its timeout fails the request; its result is kept."""
        gateway = make_gateway(facilitator, action_timeout_seconds=0.05)
        action = RecordingAction(delay=0.2)

        async def scenario():
            request = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())
            result = await gateway.run(request, action)
            await asyncio.sleep(0.3)
            replay = GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header())
            return result, await gateway.run(replay, action)

        result, replay = asyncio.run(scenario())

        assert result.failure.kind is PaymentErrorKind.ACTION_EXECUTION_FAILED
        assert "outcome pending" in result.failure.reason
        assert replay.state is S.COMPLETED
        assert replay.action_result == "minted"
        assert action.calls == 1


class TestReplays:
    """Test requests presenting an already-settled nonce."""

    def test_replay_returns_stored_result(self, requirements, facilitator):
        """A replay is answered from the stored outcome without re-verifying."""
        gateway = make_gateway(facilitator)
        action = RecordingAction()

        async def scenario():
            first = await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()), action
            )
            second = await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()), action
            )
            return first, second

        first, second = asyncio.run(scenario())

        assert first.state is S.COMPLETED
        assert second.state is S.COMPLETED
        assert second.history == [S.UNAUTHORIZED, S.DECODING, S.MATCHING, S.SETTLED, S.COMPLETED]
        assert second.replayed is True
        assert second.action_result == "minted"
        assert second.receipt.transaction == SETTLE_TX
        assert action.calls == 1
        assert facilitator.verify.await_count == 1
        assert facilitator.settle.await_count == 1

    def test_replay_after_failed_action(self, requirements, facilitator):
        """A consumed payment whose action failed is not executed again."""
        gateway = make_gateway(facilitator)
        action = RecordingAction(error=LedgerActionError("reverted"))

        async def scenario():
            await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()), action
            )
            return await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()), action
            )

        replay = asyncio.run(scenario())

        assert replay.failure.kind is PaymentErrorKind.PAYMENT_ALREADY_CONSUMED
        assert replay.failure.status_code == 409
        assert replay.receipt.transaction == SETTLE_TX
        assert action.calls == 1

    @pytest.mark.parametrize("field,value", [
        ("signature", "0xdeadbeef"),
        ("value", "1"),
        ("to", "0x" + "99" * 20),
    ])
    def test_forged_replay_is_invalid(self, requirements, facilitator, field, value):
        """A different authorization reusing a settled nonce gets nothing back."""
        gateway = make_gateway(facilitator)
        action = RecordingAction()
        document = payment_dict()
        if field == "signature":
            document["payload"]["signature"] = value
        else:
            document["payload"]["authorization"][field] = value

        async def scenario():
            await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()), action
            )
            return await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=encode_header(document)),
                action,
            )

        replay = asyncio.run(scenario())

        assert replay.state is S.FAILED
        assert replay.failure.kind is PaymentErrorKind.INVALID_PAYMENT
        assert replay.failure.charged is False
        assert replay.settlement is None
        assert replay.action_result is None
        assert S.SETTLED not in replay.history
        assert action.calls == 1
        assert facilitator.settle.await_count == 1

    def test_replay_for_different_price_is_consumed(self, requirements, facilitator):
        """A settled payment cannot be reused for a request priced differently."""
        settings = Settings(X402_PAY_TO_ADDRESS=PAY_TO, X402_NETWORKS=["base", "base-sepolia"])
        two_tokens = build_mint_requirements(settings, "https://gateway.example.com/api/v1/mint/", quantity=2)
        gateway = make_gateway(facilitator)
        action = RecordingAction()

        async def scenario():
            await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()), action
            )
            return await gateway.run(
                GatewayRequest(resource="r", requirements=two_tokens, payment_header=payment_header()), action
            )

        replay = asyncio.run(scenario())

        assert replay.failure.kind is PaymentErrorKind.PAYMENT_ALREADY_CONSUMED
        assert replay.action_result is None
        assert action.calls == 1
        assert facilitator.verify.await_count == 1

    def test_replay_of_ambiguous_settlement(self, requirements, facilitator):
        facilitator.settle.side_effect = httpx.ReadTimeout("read timed out")
        gateway = make_gateway(facilitator)

        async def scenario():
            await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()),
                RecordingAction(),
            )
            return await gateway.run(
                GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()),
                RecordingAction(),
            )

        replay = asyncio.run(scenario())

        assert replay.failure.kind is PaymentErrorKind.SETTLEMENT_AMBIGUOUS
        assert facilitator.settle.await_count == 1

    def test_concurrent_duplicates_execute_once(self, requirements, facilitator):
        """Requests racing on one nonce share the settlement; only the first acts."""
        async def scenario():
            gate = asyncio.Event()

            async def slow_settle(*args):
                await gate.wait()
                return SettleResponse(success=True, transaction=SETTLE_TX, network="base")

            facilitator.settle = AsyncMock(side_effect=slow_settle)
            gateway = make_gateway(facilitator)
            action = RecordingAction()
            runs = [
                asyncio.ensure_future(gateway.run(
                    GatewayRequest(resource="r", requirements=requirements, payment_header=payment_header()),
                    action,
                ))
                for _ in range(3)
            ]
            await asyncio.sleep(0.01)
            gate.set()
            return action, await asyncio.gather(*runs)

        action, results = asyncio.run(scenario())

        assert action.calls == 1
        assert facilitator.settle.await_count == 1
        assert results[0].state is S.COMPLETED
        assert results[0].replayed is False
        for joined in results[1:]:
            assert joined.replayed is True
            assert joined.failure.kind is PaymentErrorKind.PAYMENT_ALREADY_CONSUMED
