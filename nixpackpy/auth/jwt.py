from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

SESSION_COOKIE = "session_token"


class InvalidToken(Exception):
    pass


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(seg: str) -> bytes:
    pad = "=" * ((4 - (len(seg) % 4)) % 4)
    return base64.urlsafe_b64decode((seg + pad).encode("ascii"))


def _sign(key: bytes, signing_input: bytes) -> bytes:
    return hmac.new(key, signing_input, hashlib.sha256).digest()


def mint_session_token(
    *,
    secret: str,
    claims: dict[str, Any] | None = None,
    ttl_s: int = 3600,
    now_s: int | None = None,
) -> str:
    """Mint an HS256 session token (used by tests and local tooling)."""
    if not secret:
        raise ValueError("missing JWT secret")
    now = int(time.time() if now_s is None else now_s)
    header = {"alg": "HS256", "typ": "JWT"}
    payload: dict[str, Any] = {"iat": now, "exp": now + max(1, int(ttl_s))}
    payload.update(claims or {})

    signing_input = ".".join(
        [
            _b64url_encode(
                json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8")
            ),
            _b64url_encode(
                json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
            ),
        ]
    ).encode("ascii")
    sig = _sign(secret.encode("utf-8"), signing_input)
    return signing_input.decode("ascii") + "." + _b64url_encode(sig)


def verify_session_token(
    token: str, *, secret: str, now_s: int | None = None
) -> dict[str, Any]:
    """Verify an HS256 session token and return its claims.

    Checks the signature and, when present, the exp/nbf claims.
    """
    if not secret:
        raise InvalidToken("JWT secret is not configured")
    parts = (token or "").split(".")
    if len(parts) != 3:
        raise InvalidToken("malformed token")

    try:
        header = json.loads(_b64url_decode(parts[0]))
        payload = json.loads(_b64url_decode(parts[1]))
        got = _b64url_decode(parts[2])
    except Exception as exc:
        raise InvalidToken("malformed token") from exc

    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise InvalidToken("unsupported alg")
    if not isinstance(payload, dict):
        raise InvalidToken("malformed payload")

    expected = _sign(secret.encode("utf-8"), ".".join(parts[:2]).encode("ascii"))
    if not hmac.compare_digest(expected, got):
        raise InvalidToken("bad signature")

    now = int(time.time() if now_s is None else now_s)
    exp = payload.get("exp")
    if isinstance(exp, (int, float)) and now >= exp:
        raise InvalidToken("token expired")
    nbf = payload.get("nbf")
    if isinstance(nbf, (int, float)) and now < nbf:
        raise InvalidToken("token not yet valid")
    return payload
