# app/api/endpoints/mint.py
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Any, Optional
import logging

from app.api.models.mint import MintRequest, MintResponse
from app.core.context import GatewayContext
from app.services.ledger import ActionResult, MintAction
from app.x402 import audit
from app.x402.catalog import build_mint_requirements
from app.x402.codec import X_PAYMENT_HEADER
from app.x402.errors import PaymentErrorKind, RequirementCatalogError
from app.x402.gateway import GatewayRequest, GatewayState
from app.x402.responses import (
    create_402_response,
    create_failure_response,
    create_success_response,
    get_client_ip,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_gateway_context(request: Request) -> GatewayContext:
    """Gateway context created at startup."""
    context = getattr(request.app.state, "gateway_context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway is not initialized."
        )
    return context


def _requirements_or_500(context: GatewayContext, resource: str, quantity: int):
    try:
        return build_mint_requirements(context.settings, resource, quantity)
    except RequirementCatalogError as e:
        logger.error(f"x402: Failed to build payment requirements: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment requirements could not be built for this resource."
        )


@router.get(
    "/",
    status_code=status.HTTP_402_PAYMENT_REQUIRED,
    summary="Payment Requirements for a Single Mint"
)
async def get_mint_requirements(
    request: Request,
    context: GatewayContext = Depends(get_gateway_context)
) -> Any:
    """
    Returns the 402 challenge for minting one token, for x402 discovery.
    """
    requirements = _requirements_or_500(context, str(request.url), 1)
    audit.log_payment_required_sent(
        client_ip=get_client_ip(request),
        resource=str(request.url),
        reason="Payment required",
        accepts=requirements,
    )
    return create_402_response(requirements, error_message="Payment required")


@router.post(
    "/",
    response_model=MintResponse,
    summary="Mint Tokens (x402 Payment Required)",
    responses={
        402: {"description": "Payment required, missing or rejected"},
        409: {"description": "Payment already consumed by an earlier request"},
        500: {"description": "Charged, but the mint failed; needs reconciliation"},
        502: {"description": "Settlement failed or its outcome is unknown"},
        503: {"description": "Facilitator unavailable; not charged"},
    }
)
async def mint(
    request: Request,
    body: Optional[MintRequest] = None,
    context: GatewayContext = Depends(get_gateway_context)
) -> Any:
    """
    Mints tokens once an x402 payment for them has been verified and settled.

    Without an X-PAYMENT header the response is a 402 challenge listing the
    accepted payment options. The price is MINT_PRICE_ATOMIC per token.
    Tokens go to `to`, or to the payer when `to` is omitted.

    Raises:
        HTTPException: 422 for an invalid quantity, before any payment is taken
    """
    body = body or MintRequest()
    settings = context.settings
    if body.quantity > settings.MINT_MAX_QUANTITY:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Quantity must be between 1 and {settings.MINT_MAX_QUANTITY}."
        )

    client_ip = get_client_ip(request)
    resource = str(request.url)
    requirements = _requirements_or_500(context, resource, body.quantity)

    gateway_request = GatewayRequest(
        resource=resource,
        requirements=requirements,
        payment_header=request.headers.get(X_PAYMENT_HEADER),
        client_ip=client_ip,
    )
    audit.log_request_received(client_ip, request.method, request.url.path, request_id=gateway_request.request_id)
    logger.info(f"x402: Mint of {body.quantity} requested by {client_ip} [{gateway_request.request_id}]")

    async def mint_tokens(paid: GatewayRequest) -> ActionResult:
        recipient = body.to or paid.payer
        return await context.actuator.execute(MintAction(recipient=recipient, quantity=body.quantity))

    result = await context.gateway.run(gateway_request, mint_tokens)

    if result.state is GatewayState.COMPLETED:
        action = result.action_result
        content = MintResponse(
            txHash=action.transaction_hash,
            quantity=action.quantity,
            recipient=action.recipient,
            payer=result.payer,
            replayed=result.replayed,
        )
        return create_success_response(result, content.model_dump())

    if result.failure.kind is PaymentErrorKind.MISSING_PAYMENT:
        audit.log_payment_required_sent(
            client_ip=client_ip,
            resource=resource,
            reason=result.failure.reason,
            accepts=requirements,
            request_id=result.request_id,
        )
    return create_failure_response(result)
