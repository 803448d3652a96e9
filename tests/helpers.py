# tests/helpers.py
"""
Payment documents and fakes shared by the gateway tests.
"""
import json
import time
from base64 import b64encode

from app.services.ledger import ActionResult
from app.x402.catalog import USDC_ADDRESSES

PAY_TO = "0x1111111111111111111111111111111111111111"
PAYER = "0x2222222222222222222222222222222222222222"
MINTER = "0x3333333333333333333333333333333333333333"
SETTLE_TX = "0x" + "5e" * 32
MINT_TX = "0x" + "a7" * 32
BASE_USDC = USDC_ADDRESSES["base"]


def payment_dict(
    value: str = "100000",
    network: str = "base",
    scheme: str = "exact",
    payer: str = PAYER,
    pay_to: str = PAY_TO,
    nonce: str = "0x" + "00" * 31 + "01",
    valid_after: str = "0",
    valid_before: str = None,
) -> dict:
    """Build an X-PAYMENT document as a client would send it."""
    if valid_before is None:
        valid_before = str(int(time.time()) + 3600)
    return {
        "x402Version": 1,
        "scheme": scheme,
        "network": network,
        "payload": {
            "signature": "0x" + "ab" * 65,
            "authorization": {
                "from": payer,
                "to": pay_to,
                "value": value,
                "validAfter": valid_after,
                "validBefore": valid_before,
                "nonce": nonce,
            },
        },
    }


def encode_header(document) -> str:
    raw = document if isinstance(document, (bytes, str)) else json.dumps(document)
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return b64encode(raw).decode()


def payment_header(**kwargs) -> str:
    return encode_header(payment_dict(**kwargs))


class FakeActuator:
    """Records mint calls and returns a confirmed result, or raises `error`."""

    address = MINTER

    def __init__(self, error: Exception = None):
        self.error = error
        self.calls = []

    async def execute(self, action):
        self.calls.append(action)
        if self.error is not None:
            raise self.error
        return ActionResult(
            transaction_hash=MINT_TX,
            status="confirmed",
            quantity=action.quantity,
            recipient=action.recipient,
            block_number=42,
        )
