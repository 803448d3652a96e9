# app/x402/responses.py
"""
HTTP rendering of gateway outcomes.

- No payment / bad payment / failed verification: 402 with the original
  `accepts` list so the client can retry with a corrected payload.
- Anything from settlement onward: a JSON error body stating the failure
  kind and whether the caller was charged (true, false or null when unknown).
  When a settlement receipt exists it is returned in the body and in the
  X-PAYMENT-RESPONSE header.
"""
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Request
from starlette.responses import JSONResponse
from x402.types import PaymentRequirements

from app.x402.codec import X402_VERSION, X_PAYMENT_RESPONSE_HEADER, encode_payment_response
from app.x402.errors import is_payment_challenge
from app.x402.gateway import GatewayRequest


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First IP in the chain is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def serialize_requirements(requirements: Sequence[PaymentRequirements]) -> List[Dict[str, Any]]:
    return [requirement.model_dump(by_alias=True) for requirement in requirements]


def create_402_response(
    payment_requirements: Sequence[PaymentRequirements],
    error_message: str = "Payment required",
    payer: Optional[str] = None,
    error_kind: Optional[str] = None,
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        payment_requirements: The advertised requirements, in order
        error_message: Reason shown to the client
        payer: Payer address, when verification resolved one
        error_kind: Failure kind that caused the challenge

    Returns:
        JSONResponse with 402 status and payment details
    """
    response_body: Dict[str, Any] = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "accepts": serialize_requirements(payment_requirements),
    }
    if payer:
        response_body["payer"] = payer
    if error_kind:
        response_body["errorKind"] = error_kind

    return JSONResponse(status_code=402, content=response_body)


def create_success_response(gateway_request: GatewayRequest, content: Dict[str, Any]) -> JSONResponse:
    """200 response for a completed request, with the settlement header set."""
    response = JSONResponse(status_code=200, content=content)
    if gateway_request.receipt is not None:
        response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(gateway_request.receipt)
    return response


def create_failure_response(gateway_request: GatewayRequest) -> JSONResponse:
    """Render a Failed request: a 402 challenge or an error that states the charge."""
    failure = gateway_request.failure
    if failure is None:
        raise ValueError(f"Request {gateway_request.request_id} has not failed")

    if is_payment_challenge(failure.kind):
        return create_402_response(
            gateway_request.requirements,
            error_message=failure.reason,
            payer=failure.payer,
            error_kind=failure.kind.value,
        )

    receipt = gateway_request.receipt
    body: Dict[str, Any] = {
        "success": False,
        "error": failure.reason,
        "errorKind": failure.kind.value,
        "charged": failure.charged,
        "payer": failure.payer or gateway_request.payer,
        "settlement": receipt.model_dump(by_alias=True) if receipt is not None else None,
    }
    response = JSONResponse(status_code=failure.status_code, content=body)
    if receipt is not None:
        response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(receipt)
    return response
