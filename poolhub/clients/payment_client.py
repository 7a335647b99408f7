import asyncio
import time
from typing import List, Optional

import httpx

from poolhub.config import settings
from poolhub.errors import GatewayError
from poolhub.logging_config import get_logger

logger = get_logger(__name__)


class PaymentGatewayClient:
    """
    Outbound calls to the payment provider. The provider answers with an
    external reference right away and reports the final outcome later through
    the signed ``/webhooks/payments`` callback.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        rate_limit_per_minute: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url or str(settings.payment_gateway_url), timeout=10.0, transport=transport
        )
        self._tokens: List[float] = []
        self.rate_limit_per_minute = rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    async def _respect_rate_limit(self) -> bool:
        now = time.time()
        self._tokens = [t for t in self._tokens if now - t < 60]
        if len(self._tokens) >= self.rate_limit_per_minute:
            return False
        self._tokens.append(time.time())
        return True

    async def _request_with_retry(self, method: str, url: str, json: dict) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while retries <= self.max_retries:
            if not await self._respect_rate_limit():
                headers = {"Retry-After": str(backoff)}
                return httpx.Response(status_code=429, headers=headers, request=httpx.Request(method, url))
            try:
                response = await self.client.request(method, url, json=json)
            except httpx.RequestError as exc:
                raise GatewayError(f"Payment provider unreachable: {exc}") from exc
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                logger.warning("Gateway throttled url=%s wait_seconds=%s", url, wait)
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            if response.status_code >= 500:
                if retries == self.max_retries:
                    return response
                logger.warning("Gateway error url=%s status=%s retry=%s", url, response.status_code, retries + 1)
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            return response
        return response

    async def _submit(self, url: str, payload: dict) -> str:
        response = await self._request_with_retry("POST", url, payload)
        if response.status_code not in (200, 201, 202):
            raise GatewayError(f"Payment provider rejected the request ({response.status_code})")
        external_ref = response.json().get("externalRef")
        if not external_ref:
            raise GatewayError("Payment provider returned no reference")
        return external_ref

    async def create_deposit(self, tx_id: str, user_id: str, amount_cents: int) -> str:
        return await self._submit(
            "/v1/deposits", {"transactionId": tx_id, "userId": user_id, "amountCents": amount_cents}
        )

    async def create_payout(self, tx_id: str, user_id: str, amount_cents: int) -> str:
        return await self._submit(
            "/v1/payouts", {"transactionId": tx_id, "userId": user_id, "amountCents": amount_cents}
        )

    async def aclose(self) -> None:
        await self.client.aclose()
