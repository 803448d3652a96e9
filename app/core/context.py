# app/core/context.py
"""
Startup wiring for the payment gateway.

build_gateway_context() runs once, at application startup, and produces an
immutable GatewayContext holding every collaborator the request path needs.
Nothing on the request path creates clients or reads settings lazily.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from x402.facilitator import FacilitatorClient

from app.core.config import Settings
from app.services.ledger import LedgerActuator, Web3MintActuator
from app.x402.errors import ConfigurationError
from app.x402.gateway import GatewayStateMachine
from app.x402.settlement import SettlementCoordinator
from app.x402.verifier import PaymentVerifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayContext:
    settings: Settings
    facilitator_client: FacilitatorClient
    verifier: PaymentVerifier
    coordinator: SettlementCoordinator
    gateway: GatewayStateMachine
    actuator: LedgerActuator


def build_actuator(settings: Settings) -> LedgerActuator:
    missing = [
        name for name in ("MINT_RPC_URL", "MINT_CONTRACT_ADDRESS", "MINTER_PRIVATE_KEY")
        if not getattr(settings, name)
    ]
    if missing:
        raise ConfigurationError(f"Mint actuator not configured; missing {', '.join(missing)}")
    return Web3MintActuator(
        rpc_url=str(settings.MINT_RPC_URL),
        private_key=settings.MINTER_PRIVATE_KEY,
        contract_address=settings.MINT_CONTRACT_ADDRESS,
        gas_limit=settings.MINT_GAS_LIMIT,
        confirmation_timeout=settings.MINT_ACTION_TIMEOUT_SECONDS,
    )


def build_gateway_context(
    settings: Settings,
    facilitator_client: Optional[FacilitatorClient] = None,
    actuator: Optional[LedgerActuator] = None,
) -> GatewayContext:
    """
    Validate settings and wire the gateway.

    Args:
        settings: Loaded application settings
        facilitator_client: Facilitator to use instead of one built from settings
        actuator: Ledger actuator to use instead of the web3 mint actuator

    Raises:
        ConfigurationError: If a required setting is missing or invalid
    """
    if not settings.X402_PAY_TO_ADDRESS:
        raise ConfigurationError("X402_PAY_TO_ADDRESS must be set")
    if not settings.X402_NETWORKS:
        raise ConfigurationError("X402_NETWORKS must list at least one network")
    if settings.MINT_PRICE_ATOMIC <= 0:
        raise ConfigurationError("MINT_PRICE_ATOMIC must be positive")

    if facilitator_client is None:
        try:
            facilitator_client = FacilitatorClient({"url": str(settings.X402_FACILITATOR_URL)})
        except ValueError as e:
            raise ConfigurationError(f"Invalid X402_FACILITATOR_URL: {e}") from e
    if actuator is None:
        actuator = build_actuator(settings)

    verifier = PaymentVerifier(
        facilitator_client,
        default_timeout_seconds=settings.X402_DEFAULT_TIMEOUT_SECONDS,
    )
    coordinator = SettlementCoordinator(
        facilitator_client,
        default_timeout_seconds=settings.X402_DEFAULT_TIMEOUT_SECONDS,
        replay_ttl_seconds=settings.X402_REPLAY_TTL_SECONDS,
    )
    gateway = GatewayStateMachine(
        verifier,
        coordinator,
        action_timeout_seconds=settings.MINT_ACTION_TIMEOUT_SECONDS,
        strict_matching=settings.X402_STRICT_MATCHING,
    )

    logger.info(
        f"x402 gateway ready: networks={settings.X402_NETWORKS} "
        f"pay_to={settings.X402_PAY_TO_ADDRESS} facilitator={settings.X402_FACILITATOR_URL}"
    )
    return GatewayContext(
        settings=settings,
        facilitator_client=facilitator_client,
        verifier=verifier,
        coordinator=coordinator,
        gateway=gateway,
        actuator=actuator,
    )
