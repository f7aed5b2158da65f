import hashlib
import math
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from itsdangerous import BadData, BadPayload, BadSignature, URLSafeSerializer


TOKEN_ISSUER = "ebook-store"
TOKEN_AUDIENCE = "download-service"
TOKEN_PURPOSE = "download-service"

# 9999-12-31T23:59:59Z, the last second datetime can represent.
MAX_EPOCH = 253402300799


class DecodeError(str, Enum):
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class DownloadClaim:
    subject_id: str
    resource_id: str
    entitlement_id: str
    issued_at: int
    expires_at: int
    token_id: str

    @property
    def expires_at_datetime(self):
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


def token_fingerprint(token):
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class TokenCodec:
    """Signs and verifies download claims.

    Tokens are itsdangerous URL-safe payloads salted with the purpose label,
    so a token signed for another purpose with the same secret never
    verifies here. Expiry is checked against ``exp`` in the payload using the
    injected clock rather than the signer timestamp.
    """

    def __init__(self, secret, ttl_seconds, clock=time.time):
        if not secret:
            raise ValueError("download token secret must not be empty")
        if ttl_seconds <= 0:
            raise ValueError("download token ttl must be positive")
        self.ttl_seconds = int(ttl_seconds)
        self.clock = clock
        self._serializer = URLSafeSerializer(
            secret,
            salt=TOKEN_PURPOSE,
            signer_kwargs={"digest_method": hashlib.sha256},
        )

    def now(self):
        return int(self.clock())

    def encode(self, subject_id, resource_id, entitlement_id):
        issued_at = self.now()
        claim = DownloadClaim(
            subject_id=str(subject_id),
            resource_id=str(resource_id),
            entitlement_id=str(entitlement_id),
            issued_at=issued_at,
            expires_at=issued_at + self.ttl_seconds,
            token_id=secrets.token_urlsafe(12),
        )
        token = self._serializer.dumps(
            {
                "sub": claim.subject_id,
                "res": claim.resource_id,
                "ent": claim.entitlement_id,
                "iat": claim.issued_at,
                "exp": claim.expires_at,
                "jti": claim.token_id,
                "iss": TOKEN_ISSUER,
                "aud": TOKEN_AUDIENCE,
            }
        )
        return token, claim

    def decode(self, token):
        if not isinstance(token, str) or not token:
            return None, DecodeError.MALFORMED
        try:
            payload = self._serializer.loads(token)
        except BadPayload:
            return None, DecodeError.MALFORMED
        except BadSignature:
            return None, DecodeError.INVALID_SIGNATURE

        claim = _claim_from_payload(payload)
        if claim is None:
            return None, DecodeError.MALFORMED
        if payload.get("iss") != TOKEN_ISSUER or payload.get("aud") != TOKEN_AUDIENCE:
            return None, DecodeError.INVALID_SIGNATURE
        if self.now() >= claim.expires_at:
            return None, DecodeError.EXPIRED
        return claim, None

    def peek_expiry(self, token):
        # Unverified read, only for client hints. Never use for authorization.
        if not isinstance(token, str) or not token:
            return None
        try:
            _, payload = self._serializer.loads_unsafe(token)
        except BadData:
            return None
        if not isinstance(payload, dict):
            return None
        exp = payload.get("exp")
        if not _is_epoch(exp):
            return None
        return exp

    def expiration_time(self, token):
        exp = self.peek_expiry(token)
        if exp is None:
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def minutes_until_expiry(self, token, now=None):
        exp = self.peek_expiry(token)
        if exp is None:
            return None
        current = self.clock() if now is None else now
        return max(0, math.ceil((exp - current) / 60))

    def is_near_expiry(self, token, window_seconds=120, now=None):
        exp = self.peek_expiry(token)
        if exp is None:
            return True
        current = self.clock() if now is None else now
        return exp <= current + window_seconds


def _is_epoch(value):
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    return 0 <= value <= MAX_EPOCH


def _claim_from_payload(payload):
    if not isinstance(payload, dict):
        return None
    strings = [payload.get(k) for k in ("sub", "res", "ent", "jti")]
    if not all(isinstance(v, str) and v for v in strings):
        return None
    if not _is_epoch(payload.get("iat")) or not _is_epoch(payload.get("exp")):
        return None
    if payload["exp"] <= payload["iat"]:
        return None
    return DownloadClaim(
        subject_id=payload["sub"],
        resource_id=payload["res"],
        entitlement_id=payload["ent"],
        issued_at=payload["iat"],
        expires_at=payload["exp"],
        token_id=payload["jti"],
    )
