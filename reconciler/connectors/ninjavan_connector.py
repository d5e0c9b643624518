"""
NinjaVan carrier connector.

API structure:
  - POST /{cc}/2.0/oauth/access_token - client credentials token
  - POST /{cc}/4.2/orders - create a delivery order
  - DELETE /{cc}/2.2/orders/{tracking_id} - cancel before pickup
  - GET /{cc}/2.0/reports/waybill?tid= - waybill PDF

4xx answers raise CarrierRejected and are never retried. 5xx answers,
timeouts and connection errors raise ExternalUnavailable, which the
base connector retries with backoff.
"""
from datetime import timedelta
from typing import Any, Dict, Optional
import asyncio
import aiohttp
from reconciler.connectors.base_connector import BaseConnector
from reconciler.config import get_settings
from reconciler.errors import CarrierRejected, ExternalUnavailable
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log

settings = get_settings()

# Refresh the token this long before the carrier says it expires
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


class NinjaVanConnector(BaseConnector):
    """Connector for the NinjaVan shipping API"""

    def __init__(
        self,
        api_url: Optional[str] = None,
        country_code: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__("NinjaVan", timeout_seconds or settings.carrier_timeout_seconds)
        self.api_url = (api_url or settings.ninjavan_api_url).rstrip("/")
        self.country_code = (country_code or settings.ninjavan_country_code).upper()
        self.client_id = client_id if client_id is not None else settings.ninjavan_client_id
        self.client_secret = client_secret if client_secret is not None else settings.ninjavan_client_secret
        self._token: Optional[str] = None
        self._token_expires_at = None
        self._token_lock = asyncio.Lock()

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def base_url(self) -> str:
        return f"{self.api_url}/{self.country_code}"

    # ── Auth ─────────────────────────────────────────────

    def _token_valid(self) -> bool:
        return bool(
            self._token
            and self._token_expires_at
            and utcnow() < self._token_expires_at - TOKEN_REFRESH_MARGIN
        )

    async def get_access_token(self) -> str:
        """Return a cached OAuth token, fetching a new one when close to expiry"""
        async with self._token_lock:
            if self._token_valid():
                return self._token

            payload = {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            }
            data = await self._send("POST", "/2.0/oauth/access_token", json=payload, authenticated=False)
            token = data.get("access_token") if isinstance(data, dict) else None
            if not token:
                raise ExternalUnavailable(self.name, "Token response did not include access_token")

            expires_in = int(data.get("expires_in") or 3600)
            self._token = token
            self._token_expires_at = utcnow() + timedelta(seconds=expires_in)
            log.info(f"Obtained NinjaVan access token (expires in {expires_in}s)")
            return token

    def invalidate_token(self):
        self._token = None
        self._token_expires_at = None

    # ── HTTP ─────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        authenticated: bool = True,
        binary: bool = False,
    ) -> Any:
        """Single HTTP exchange with typed error mapping"""
        headers = {"Accept": "application/pdf" if binary else "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {await self.get_access_token()}"
        if json is not None:
            headers["Content-Type"] = "application/json"

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        operation = path.split("?")[0]
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=headers,
                    json=json,
                    params=params,
                ) as response:
                    if response.status == 401 and authenticated:
                        # Stale token; drop it so the retry fetches a new one
                        self.invalidate_token()
                        raise ExternalUnavailable(self.name, "Access token rejected", status=401)
                    if response.status >= 500:
                        body = await response.text()
                        raise ExternalUnavailable(
                            self.name, f"HTTP {response.status}: {body[:200]}", status=response.status
                        )
                    if response.status >= 400:
                        body = await response.text()
                        raise CarrierRejected(operation, body[:500] or f"HTTP {response.status}", status=response.status)

                    if binary:
                        return await response.read()
                    if response.status == 204:
                        return {}
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExternalUnavailable(self.name, f"{type(e).__name__}: {e}")

    async def _call(self, method: str, path: str, operation_name: str, **kwargs) -> Any:
        if not self.is_configured():
            raise ExternalUnavailable(self.name, "Carrier credentials not configured")
        return await self._retry_operation(
            lambda: self._send(method, path, **kwargs),
            operation_name=operation_name,
        )

    # ── Operations ───────────────────────────────────────

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a delivery order; returns the carrier response (includes tracking_number)"""
        data = await self._call("POST", "/4.2/orders", "create_order", json=payload)
        log.info(
            f"NinjaVan order created for {payload.get('requested_tracking_number')}: "
            f"{data.get('tracking_number') if isinstance(data, dict) else data}"
        )
        return data if isinstance(data, dict) else {}

    async def cancel_order(self, tracking_id: str) -> Dict[str, Any]:
        """Cancel a parcel that has not been picked up yet"""
        data = await self._call("DELETE", f"/2.2/orders/{tracking_id}", "cancel_order")
        log.info(f"NinjaVan order {tracking_id} cancelled")
        return data if isinstance(data, dict) else {}

    async def get_waybill(self, tracking_id: str) -> bytes:
        """Download the waybill PDF for a parcel"""
        return await self._call(
            "GET", "/2.0/reports/waybill", "get_waybill", params={"tid": tracking_id}, binary=True
        )

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["base_url"] = self.base_url
        status["token_cached"] = self._token_valid()
        return status
