import hashlib
import hmac
from typing import Mapping

from fastapi import Header, HTTPException, Request

from account_pool.config import Settings, SignatureMode
from account_pool.logging_config import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class SignatureVerifier:
    """
    Authenticates inbound notifications before anything is parsed or stored.

    HMAC mode recomputes the digest over the exact bytes received; token mode
    compares the provider's static token. Both comparisons are constant-time.
    """

    def __init__(self, settings: Settings):
        self.mode = settings.signature_mode
        self.hmac_secret = settings.hmac_secret
        self.signature_header = settings.signature_header
        self.hottok = settings.hottok
        self.token_header = settings.token_header

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if self.mode == SignatureMode.TOKEN:
            self._verify_token(headers.get(self.token_header))
        else:
            self._verify_hmac(raw_body, headers.get(self.signature_header))

    def _verify_hmac(self, raw_body: bytes, signature: str | None) -> None:
        signature = (signature or "").strip()
        if not signature:
            self._reject("missing signature")
        if not signature.startswith(SIGNATURE_PREFIX):
            self._reject("invalid signature")
        expected = compute_signature(self.hmac_secret, raw_body)
        if not hmac.compare_digest(expected.encode(), signature.lower().encode()):
            self._reject("invalid signature")

    def _verify_token(self, token: str | None) -> None:
        if not self.hottok:
            # an unset token must never authenticate a request
            self._reject("token verification not configured")
        if not token:
            self._reject("missing token")
        if not hmac.compare_digest(token.encode(), self.hottok.encode()):
            self._reject("invalid token")

    def _reject(self, reason: str) -> None:
        logger.warning("Rejected webhook: authenticity check failed mode=%s reason=%s", self.mode.value, reason)
        raise HTTPException(status_code=401, detail=reason)


def require_bearer_token(request: Request, authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    settings: Settings = request.app.state.settings
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
