"""Python SDK for merchants integrating with the AP2 mandate gateway.

This package is intentionally small:
- Request signing compatible with the gateway's HMAC scheme.
- A synchronous HTTP client for gateway and account operations.
- Verification of inbound webhook deliveries.
"""

from __future__ import annotations

__all__ = [
    "MerchantGatewayClient",
    "canonical_json",
    "sign_request",
    "verify_webhook",
]

from ap2_merchant.client import MerchantGatewayClient, canonical_json, sign_request, verify_webhook
