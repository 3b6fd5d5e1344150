"""HMAC signing shared by the broker and its clients.

Proxy requests are signed with a key derived from the proxy token the client
holds, so the client never needs a second secret and the server can recompute
the key from the bearer token it already validated.
"""

import json
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

PROXY_SIGNING_INFO = b"credbroker/proxy-request-signature/v1"


def compact_json(value: Any) -> str:
    """Serialize to JSON without whitespace, keeping key order."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def hmac_sha256_hex(key: bytes, message: str) -> str:
    """Compute a hex HMAC-SHA256.

    Args:
        key: HMAC key.
        message: Message to authenticate.

    Returns:
        Lower-case hex digest.
    """
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(message.encode())
    return h.finalize().hex()


def verify_hmac_sha256_hex(key: bytes, message: str, signature: str) -> bool:
    """Check a hex HMAC-SHA256 in constant time.

    Args:
        key: HMAC key.
        message: Message that was signed.
        signature: Hex signature to check.

    Returns:
        True if the signature matches.
    """
    try:
        expected = bytes.fromhex(signature)
    except ValueError:
        return False
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(message.encode())
    try:
        h.verify(expected)
    except InvalidSignature:
        return False
    return True


def derive_key(input_key: bytes, info: bytes) -> bytes:
    """Derive a 32-byte subkey with HKDF-SHA256.

    Args:
        input_key: Input keying material.
        info: Context string separating subkeys of the same input.

    Returns:
        32-byte key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=info,
    )
    return hkdf.derive(input_key)


def derive_request_signing_key(proxy_token: str) -> bytes:
    """Derive the proxy request signing key from a proxy token."""
    return derive_key(proxy_token.encode(), PROXY_SIGNING_INFO)


def canonical_request_payload(
    session_id: str,
    request_id: str,
    method: str,
    endpoint: str,
    body: Any | None,
    timestamp: int,
) -> str:
    """Build the exact string a proxy request signature covers.

    Args:
        session_id: Session identifier.
        request_id: Client-chosen request identifier.
        method: Upper-case HTTP method.
        endpoint: Upstream path.
        body: JSON body or None.
        timestamp: Signing time (epoch ms).

    Returns:
        Compact JSON object with fields in fixed order.
    """
    return compact_json(
        {
            "sessionId": session_id,
            "requestId": request_id,
            "method": method,
            "endpoint": endpoint,
            "body": compact_json(body) if body is not None else "",
            "timestamp": timestamp,
        }
    )


def sign_proxy_request(
    proxy_token: str,
    session_id: str,
    request_id: str,
    method: str,
    endpoint: str,
    body: Any | None,
    timestamp: int,
) -> str:
    """Sign a proxy request with the key derived from `proxy_token`."""
    payload = canonical_request_payload(session_id, request_id, method, endpoint, body, timestamp)
    return hmac_sha256_hex(derive_request_signing_key(proxy_token), payload)
