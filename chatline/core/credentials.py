from __future__ import annotations

import base64
import os
from typing import Callable, Optional

import orjson
from cryptography.exceptions import InvalidKey, InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .proto import now_ms

NowFn = Callable[[], int]

_B64_PAD = {0: "", 2: "==", 3: "="}

_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1


class CredentialError(Exception):
    """Token missing, malformed, forged or expired."""


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    pad = _B64_PAD.get(len(value) % 4)
    if pad is None:
        raise ValueError("invalid base64url length")
    return base64.urlsafe_b64decode(value + pad)


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------

class TokenAuthority:
    """Issues and verifies ``<body>.<mac>`` bearer tokens.

    The body is base64url JSON ``{"sub": user_id, "exp": ms}``; the mac is
    HMAC-SHA256 over the encoded body with the server secret.
    """

    def __init__(self, secret: str | bytes, ttl_secs: int = 3600, now: NowFn = now_ms) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self.secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.ttl_ms = int(ttl_secs) * 1000
        self.now = now

    def issue(self, user_id: int) -> str:
        body = b64url(orjson.dumps({"sub": int(user_id), "exp": self.now() + self.ttl_ms}))
        return f"{body}.{b64url(self._mac(body))}"

    def verify(self, token: Optional[str]) -> int:
        """Return the user id carried by ``token`` or raise CredentialError."""

        if not token:
            raise CredentialError("missing token")
        body, sep, mac_b64 = token.partition(".")
        if not sep or not body or not mac_b64:
            raise CredentialError("malformed token")
        try:
            mac = b64url_decode(mac_b64)
        except ValueError as exc:
            raise CredentialError("malformed token") from exc

        h = hmac.HMAC(self.secret, hashes.SHA256())
        h.update(body.encode("ascii"))
        try:
            h.verify(mac)
        except InvalidSignature as exc:
            raise CredentialError("bad token signature") from exc

        try:
            claims = orjson.loads(b64url_decode(body))
            user_id = int(claims["sub"])
            expires = int(claims["exp"])
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialError("malformed token claims") from exc
        if expires <= self.now():
            raise CredentialError("token expired")
        return user_id

    def _mac(self, body: str) -> bytes:
        h = hmac.HMAC(self.secret, hashes.SHA256())
        h.update(body.encode("ascii"))
        return h.finalize()


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=32, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    derived = _kdf(salt).derive(password.encode("utf-8"))
    return f"scrypt${b64url(salt)}${b64url(derived)}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, salt_b64, hash_b64 = stored.split("$")
        if scheme != "scrypt":
            return False
        salt, expected = b64url_decode(salt_b64), b64url_decode(hash_b64)
    except ValueError:
        return False
    try:
        _kdf(salt).verify(password.encode("utf-8"), expected)
        return True
    except InvalidKey:
        return False


__all__ = [
    "CredentialError",
    "TokenAuthority",
    "hash_password",
    "verify_password",
    "b64url",
    "b64url_decode",
]
