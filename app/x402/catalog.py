# app/x402/catalog.py
"""
Payment requirement catalog.

Builds the ordered list of PaymentRequirements advertised in a 402 challenge.
One requirement is produced per accepted network, in configuration order; the
first entry doubles as the fallback when a payload matches none of them.

Prices are expressed in atomic units of the asset (USDC has 6 decimals, so
100000 = 0.1 USDC). Conversion and EIP-712 domain resolution go through the
x402 SDK so the requirement carries the same metadata the facilitator expects.
"""
import logging
from typing import List, Optional, Sequence

from x402.common import process_price_to_atomic_amount
from x402.types import (
    EIP712Domain,
    PaymentRequirements,
    Price,
    TokenAmount,
    TokenAsset,
)

from app.core.config import Settings
from app.x402.errors import RequirementCatalogError

logger = logging.getLogger(__name__)

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

EXACT_SCHEME = "exact"


def build_payment_requirements(
    resource: str,
    price: Price,
    networks: Sequence[str],
    pay_to: str,
    max_timeout_seconds: int,
    description: str = "",
    mime_type: str = "application/json",
) -> List[PaymentRequirements]:
    """
    Build the requirement list for a protected resource.

    Args:
        resource: Resource identifier (full request URL)
        price: Money amount or TokenAmount in atomic units
        networks: Accepted networks, in preference order
        pay_to: Payee address
        max_timeout_seconds: Maximum time the facilitator may take
        description: Human-readable description
        mime_type: Content type of the gated response

    Returns:
        Non-empty ordered list of PaymentRequirements

    Raises:
        RequirementCatalogError: If no networks are given or the price
            cannot be converted to an atomic amount
    """
    if not networks:
        raise RequirementCatalogError("At least one network is required")
    if not pay_to:
        raise RequirementCatalogError("A payee address is required")

    requirements = []
    for network in networks:
        try:
            max_amount_required, asset_address, eip712_domain = process_price_to_atomic_amount(
                price, network
            )
        except Exception as e:
            raise RequirementCatalogError(
                f"Cannot convert price for network '{network}': {e}"
            ) from e

        if int(max_amount_required) <= 0:
            raise RequirementCatalogError(
                f"Price must be a positive atomic amount, got {max_amount_required}"
            )

        try:
            requirements.append(
                PaymentRequirements(
                    scheme=EXACT_SCHEME,
                    network=network,
                    max_amount_required=max_amount_required,
                    resource=resource,
                    description=description,
                    mime_type=mime_type,
                    pay_to=pay_to,
                    max_timeout_seconds=max_timeout_seconds,
                    asset=asset_address,
                    output_schema=None,
                    extra=eip712_domain,
                )
            )
        except ValueError as e:
            raise RequirementCatalogError(f"Invalid payment requirement for '{network}': {e}") from e

    return requirements


def resolve_asset_address(network: str, override: Optional[str] = None) -> str:
    """Return the payment asset address for a network."""
    if override:
        return override
    try:
        return USDC_ADDRESSES[network]
    except KeyError:
        raise RequirementCatalogError(
            f"No asset address known for network '{network}'; set X402_ASSET_ADDRESS"
        )


def build_mint_requirements(
    settings: Settings,
    resource: str,
    quantity: int = 1,
) -> List[PaymentRequirements]:
    """
    Build requirements for minting `quantity` tokens.

    The price is MINT_PRICE_ATOMIC per token, in atomic units of the
    configured asset on every accepted network.
    """
    if quantity < 1:
        raise RequirementCatalogError("Quantity must be at least 1")

    amount = settings.MINT_PRICE_ATOMIC * quantity
    requirements = []
    for network in settings.X402_NETWORKS:
        price = TokenAmount(
            amount=str(amount),
            asset=TokenAsset(
                address=resolve_asset_address(network, settings.X402_ASSET_ADDRESS),
                decimals=settings.X402_ASSET_DECIMALS,
                eip712=EIP712Domain(
                    name=settings.X402_ASSET_NAME,
                    version=settings.X402_ASSET_VERSION,
                ),
            ),
        )
        requirements.extend(
            build_payment_requirements(
                resource=resource,
                price=price,
                networks=[network],
                pay_to=settings.X402_PAY_TO_ADDRESS,
                max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
                description=settings.MINT_DESCRIPTION if quantity == 1
                else f"{settings.MINT_DESCRIPTION} x{quantity}",
            )
        )

    logger.debug(f"x402: Built {len(requirements)} requirement(s) for {resource} ({amount} atomic units)")
    return requirements
