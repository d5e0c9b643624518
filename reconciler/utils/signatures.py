"""
Webhook signature verification
"""
import base64
import hashlib
import hmac
from typing import Optional, Union


def compute_signature(body: Union[bytes, str], secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw request body"""
    if isinstance(body, str):
        body = body.encode("utf-8")
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(mac).decode("ascii")


def verify_signature(body: Union[bytes, str], provided: Optional[str], secret: Optional[str]) -> bool:
    """
    Check a carrier webhook signature in constant time.

    A missing header or an unconfigured secret never verifies.
    """
    if not provided or not secret:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().encode("ascii", "ignore"))
