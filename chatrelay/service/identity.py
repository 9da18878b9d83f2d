from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger, redact_subject
from chatrelay.service.errors import AuthenticationError

logger = get_logger(__name__)

_ANON_BODY_RE = re.compile(r"^[A-Za-z0-9-]{8,64}$")


@dataclass(frozen=True)
class Subject:
    """The one effective identity an operation is authorized and billed against."""

    id: str
    is_anonymous: bool


def generate_anonymous_id(prefix: str = "anon_") -> str:
    return f"{prefix}{uuid.uuid4()}"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class IdentityResolver:
    """Collapse session identity and client anonymous ids into one subject id.

    A verified bearer token wins; otherwise a well-formed anonymous id is
    used; otherwise the request is unauthenticated. A bearer token that is
    present but fails verification is rejected outright rather than falling
    back to the anonymous id.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.anonymous_prefix = settings.anonymous_id_prefix
        self._clock_skew_leeway = timedelta(seconds=30)

    def is_anonymous(self, subject_id: str) -> bool:
        return subject_id.startswith(self.anonymous_prefix)

    def resolve(
        self,
        *,
        bearer_token: Optional[str] = None,
        anonymous_id: Optional[str] = None,
    ) -> Subject:
        if bearer_token:
            claims = self._decode_jwt(bearer_token)
            subject_id = claims.get("sub") if claims else None
            if not isinstance(subject_id, str) or not subject_id:
                logger.warning("identity_session_rejected")
                raise AuthenticationError("invalid session token")
            if self.is_anonymous(subject_id):
                raise AuthenticationError("session subject uses the anonymous prefix")
            return Subject(id=subject_id, is_anonymous=False)
        if anonymous_id:
            if not self._valid_anonymous_id(anonymous_id):
                logger.warning(
                    "identity_anonymous_rejected", subject=redact_subject(anonymous_id)
                )
                raise AuthenticationError("malformed anonymous user id")
            return Subject(id=anonymous_id, is_anonymous=True)
        raise AuthenticationError("authentication required")

    def _valid_anonymous_id(self, anonymous_id: str) -> bool:
        if not self.is_anonymous(anonymous_id):
            return False
        return bool(_ANON_BODY_RE.match(anonymous_id[len(self.anonymous_prefix):]))

    def encode_session_token(self, subject_id: str, *, ttl_seconds: int = 3600) -> str:
        """Mint an HS256 session token the resolver accepts (dev tooling and tests)."""

        secret = self._secret()
        payload: dict[str, Any] = {"sub": subject_id, "exp": int(time.time()) + ttl_seconds}
        if self.settings.session_jwt_issuer:
            payload["iss"] = self.settings.session_jwt_issuer
        if self.settings.session_jwt_audience:
            payload["aud"] = self.settings.session_jwt_audience
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _secret(self) -> str:
        secret = self.settings.session_jwt_secret
        if not secret:
            raise AuthenticationError("session tokens are not configured")
        return secret

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        secret = self._secret()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        issuer = self.settings.session_jwt_issuer
        if issuer and payload.get("iss") != issuer:
            return None
        audience = self.settings.session_jwt_audience
        if audience:
            aud = payload.get("aud")
            if isinstance(aud, str):
                valid_aud = aud == audience
            elif isinstance(aud, list):
                valid_aud = audience in aud
            else:
                valid_aud = False
            if not valid_aud:
                return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload


__all__ = ["Subject", "IdentityResolver", "generate_anonymous_id"]
