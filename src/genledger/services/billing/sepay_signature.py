"""HMAC signature validation for SePay webhooks.

SePay signs the raw request body with HMAC-SHA256 using the secret configured
in its dashboard and sends the hex digest in the X-Sepay-Signature header.

Security Note:
    validate_sepay_signature MUST be called before the payload is parsed.
    Return 401 Unauthorized immediately if validation fails.
"""

import hashlib
import hmac


def compute_sepay_signature(raw_body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 digest SePay sends for `raw_body`."""
    return hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()


def validate_sepay_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Validate a SePay webhook signature.

    Args:
        raw_body: Exact request body bytes, before any JSON parsing
        signature: Hex digest from the X-Sepay-Signature header
            (an optional "sha256=" prefix is accepted)
        secret: Webhook secret from the SePay dashboard

    Returns:
        True if the signature is valid, False otherwise (including when no
        secret is configured)
    """
    if not secret or not signature:
        return False

    signature = signature.strip().lower()
    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]

    expected = compute_sepay_signature(raw_body, secret)

    # Constant-time comparison; never use == for signatures
    return hmac.compare_digest(expected, signature)
