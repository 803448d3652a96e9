# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module gates the mint endpoint behind the x402 payment protocol:
a caller presents a signed payment authorization, the gateway verifies and
settles it through a facilitator, and only then mints.

Key components:
- catalog: Payment requirements advertised in 402 responses
- codec: X-PAYMENT / X-PAYMENT-RESPONSE header encoding
- matching: Selects the requirement a payment targets
- verifier: Facilitator verification with timeouts
- settlement: At-most-once settlement per payment nonce
- gateway: State machine tying the steps to the gated action
- responses: HTTP rendering of gateway outcomes
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
