import asyncio

import httpx

from account_pool.config import Settings
from account_pool.logging_config import get_logger

logger = get_logger(__name__)


class CredentialDeliveryError(Exception):
    pass


class CredentialDispatcher:
    """
    Hands freshly generated credentials to the mail relay.

    Delivery happens after the allocation is committed and never undoes it;
    a failed delivery is logged so an operator can resend.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.relay_url = str(settings.credential_relay_url) if settings.credential_relay_url else None
        self.relay_token = settings.credential_relay_token
        self.login_url = settings.login_url
        self.max_retries = settings.max_retries
        self.retry_backoff_seconds = settings.retry_backoff_seconds
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def _request_with_retry(self, method: str, url: str, json: dict) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        headers = {"Authorization": f"Bearer {self.relay_token}"} if self.relay_token else {}
        while True:
            try:
                response = await self.client.request(method, url, json=json, headers=headers)
            except httpx.RequestError as exc:
                raise CredentialDeliveryError(f"relay request error: {exc}") from exc
            if response.status_code == 429 or response.status_code >= 500:
                if retries >= self.max_retries:
                    return response
                retry_after = response.headers.get("Retry-After") if response.status_code == 429 else None
                await asyncio.sleep(float(retry_after) if retry_after else backoff)
                retries += 1
                backoff *= 2
                continue
            return response

    async def send(self, buyer_email: str, username: str, password: str) -> bool:
        if not self.relay_url:
            logger.warning("Credential relay not configured; delivery skipped for %s username=%s", buyer_email, username)
            return False
        payload = {
            "to": buyer_email,
            "username": username,
            "password": password,
            "login_url": self.login_url,
        }
        resp = await self._request_with_retry("POST", self.relay_url, json=payload)
        if resp.status_code >= 400:
            raise CredentialDeliveryError(f"relay responded {resp.status_code}")
        logger.info("Credentials delivered to %s username=%s", buyer_email, username)
        return True

    async def dispatch(self, buyer_email: str, username: str, password: str) -> bool:
        try:
            return await self.send(buyer_email, username, password)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Credential delivery failed for %s username=%s error=%s; allocation kept",
                buyer_email,
                username,
                exc,
            )
            return False
