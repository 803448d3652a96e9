# tests/conftest.py
"""
Shared fixtures for the x402 mint gateway tests.

The facilitator and the ledger actuator are replaced by fakes; no test makes
a network call or writes the audit log unless it patches the log path.
"""
import os

# Must be set before app.core.config is imported
os.environ.setdefault("X402_AUDIT_ENABLED", "false")

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from x402.types import SettleResponse, VerifyResponse

from app.core.config import Settings
from app.core.context import build_gateway_context
from app.main import create_app
from helpers import PAY_TO, PAYER, SETTLE_TX, FakeActuator


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        X402_PAY_TO_ADDRESS=PAY_TO,
        X402_NETWORKS=["base"],
        X402_AUDIT_ENABLED=False,
        MINT_PRICE_ATOMIC=100_000,
        MINT_MAX_QUANTITY=5,
    )


@pytest.fixture
def facilitator():
    client = MagicMock()
    client.verify = AsyncMock(
        return_value=VerifyResponse(is_valid=True, invalid_reason=None, payer=PAYER)
    )
    client.settle = AsyncMock(
        return_value=SettleResponse(success=True, transaction=SETTLE_TX, network="base")
    )
    return client


@pytest.fixture
def actuator() -> FakeActuator:
    return FakeActuator()


@pytest.fixture
def gateway_context(test_settings, facilitator, actuator):
    return build_gateway_context(test_settings, facilitator_client=facilitator, actuator=actuator)


@pytest.fixture
def client(gateway_context) -> TestClient:
    return TestClient(create_app(gateway_context))
