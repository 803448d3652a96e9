# app/x402/codec.py
"""
X-PAYMENT / X-PAYMENT-RESPONSE header codec.

The X-PAYMENT header carries a base64-encoded JSON PaymentPayload. Decoding
validates the JSON against a strict schema before it reaches business logic:
missing fields, unknown fields and non-integer amounts or timestamps are all
rejected. A bad header never raises; it becomes a MalformedPayload failure.

The X-PAYMENT-RESPONSE header is the base64-encoded JSON settlement receipt.
"""
import json
import logging
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.types import PaymentPayload, SettleResponse

from app.x402.errors import PaymentErrorKind, PaymentFailure

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


class _StrictModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class AuthorizationSchema(_StrictModel):
    """EIP-3009 transferWithAuthorization record as it appears on the wire."""
    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    value: str
    valid_after: str
    valid_before: str
    nonce: str = Field(..., min_length=1)

    @field_validator("value", "valid_after", "valid_before")
    @classmethod
    def _must_be_unsigned_integer(cls, v: str) -> str:
        # str.isdigit() also accepts non-ASCII digits such as "²" that int() rejects
        if not (v.isascii() and v.isdigit()):
            raise ValueError("must be a non-negative integer string")
        return v


class ExactPayloadSchema(_StrictModel):
    signature: str = Field(..., min_length=1)
    authorization: AuthorizationSchema


class PaymentHeaderSchema(_StrictModel):
    """Top-level X-PAYMENT document."""
    x402_version: int
    scheme: str = Field(..., min_length=1)
    network: str = Field(..., min_length=1)
    payload: ExactPayloadSchema


def _malformed(reason: str) -> PaymentFailure:
    return PaymentFailure(kind=PaymentErrorKind.MALFORMED_PAYLOAD, reason=reason)


def decode_payment_header(header_value: Optional[str]) -> Union[PaymentPayload, PaymentFailure]:
    """
    Decode the X-PAYMENT header into a PaymentPayload.

    Args:
        header_value: Base64-encoded payment payload

    Returns:
        PaymentPayload if successfully decoded and validated, otherwise a
        PaymentFailure of kind MalformedPayload (MissingPayment if absent)
    """
    if header_value is None or not header_value.strip():
        return PaymentFailure(
            kind=PaymentErrorKind.MISSING_PAYMENT,
            reason="X-PAYMENT header is required",
        )

    try:
        decoded_str = safe_base64_decode(header_value.strip())
    except Exception as e:
        logger.warning(f"Failed to decode X-PAYMENT header: invalid base64 ({e})")
        return _malformed("Invalid X-PAYMENT header format: not base64")
    if not decoded_str:
        logger.warning("Failed to decode X-PAYMENT header: invalid base64")
        return _malformed("Invalid X-PAYMENT header format: not base64")

    try:
        payload_dict = json.loads(decoded_str)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse X-PAYMENT header JSON: {e}")
        return _malformed("Invalid X-PAYMENT header format: not JSON")

    if not isinstance(payload_dict, dict):
        return _malformed("Invalid X-PAYMENT header format: expected a JSON object")

    try:
        validated = PaymentHeaderSchema.model_validate(payload_dict)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        logger.warning(f"X-PAYMENT header failed schema validation: {fields}")
        return _malformed(f"Invalid X-PAYMENT header format: invalid fields ({fields})")

    try:
        return PaymentPayload.model_validate(validated.model_dump(by_alias=True))
    except ValidationError as e:
        logger.warning(f"X-PAYMENT header rejected by x402 types: {e}")
        return _malformed("Invalid X-PAYMENT header format")


def encode_payment_header(payment_payload: PaymentPayload) -> str:
    """Encode a PaymentPayload for the X-PAYMENT header."""
    payload_json = json.dumps(payment_payload.model_dump(by_alias=True))
    return safe_base64_encode(payload_json.encode("utf-8"))


def encode_payment_response(settle_response: SettleResponse) -> str:
    """
    Encode a settlement response for the X-PAYMENT-RESPONSE header.

    Args:
        settle_response: The settlement response from the facilitator

    Returns:
        Base64-encoded JSON string
    """
    response_dict = settle_response.model_dump(by_alias=True)
    response_json = json.dumps(response_dict)
    return safe_base64_encode(response_json.encode("utf-8"))


def decode_payment_response(header_value: str) -> SettleResponse:
    """Decode an X-PAYMENT-RESPONSE header back into a SettleResponse."""
    return SettleResponse.model_validate(json.loads(safe_base64_decode(header_value)))
