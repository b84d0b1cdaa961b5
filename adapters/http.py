"""
HTTP adapters built on requests.

Blocking calls run in a worker thread so the async services stay
responsive. Transport failures surface as ConnectionError; HTTP error
statuses are returned to the caller, which decides what they mean.
"""

import asyncio
from typing import Any

import requests
import structlog

from core.config import SupabaseConfig
from core.domain.models import EndpointResponse
from core.services.offline_cache import CacheRequest, CacheResponse

logger = structlog.get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class RequestsNetwork:
    """Network for the offline cache controller."""

    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch(self, request: CacheRequest) -> CacheResponse:
        try:
            response = self.session.request(request.method, request.url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ConnectionError(f"Fetch failed for {request.url}: {e}") from e
        return CacheResponse(
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
            url=response.url,
        )

    async def fetch(self, request: CacheRequest) -> CacheResponse:
        return await asyncio.to_thread(self._fetch, request)


class SupabaseFunctionsClient:
    """Client for the deployed edge functions."""

    def __init__(self, config: SupabaseConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": config.anon_key})
        self.logger = logger.bind(component="functions_client")

    def _call(
        self,
        method: str,
        name: str,
        *,
        bearer: str | None = None,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> EndpointResponse:
        headers = {"Authorization": f"Bearer {bearer or self.config.anon_key}"}
        url = f"{self.config.functions_url}/{name}"
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=self.config.request_timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            raise ConnectionError(f"Function call failed for {name}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}
        self.logger.debug("function_called", function=name, status=response.status_code)
        return EndpointResponse(status=response.status_code, body=body)

    async def request_login_code(self, email: str) -> EndpointResponse:
        return await asyncio.to_thread(
            self._call, "POST", "request-login-code", json={"email": email}
        )

    async def verify_login_code(self, email: str, code: str) -> EndpointResponse:
        return await asyncio.to_thread(
            self._call, "POST", "verify-login-code", json={"email": email, "code": code}
        )

    async def claim_household_invite(self, access_token: str) -> EndpointResponse:
        return await asyncio.to_thread(
            self._call, "POST", "claim-household-invite", bearer=access_token
        )

    async def doctor_summary(self, token: str) -> EndpointResponse:
        return await asyncio.to_thread(
            self._call, "GET", "doctor-summary", params={"share": token}
        )


class ResendEmailSender:
    """Sends login codes through the Resend API."""

    def __init__(
        self,
        api_key: str,
        sender: str = "Tamoxifen Tracker <noreply@resend.dev>",
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def _send(self, email: str, code: str, ttl_minutes: int) -> None:
        html = (
            "<h2>Your Tamoxifen Tracker Login Code</h2>"
            f'<p style="font-size: 32px; font-weight: bold; letter-spacing: 4px;">{code}</p>'
            f"<p>This code expires in {ttl_minutes} minutes.</p>"
            "<p>If you didn't request this, you can ignore this email.</p>"
        )
        try:
            response = requests.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.sender,
                    "to": [email],
                    "subject": f"Your login code: {code}",
                    "html": html,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ConnectionError(f"Email send failed: {e}") from e

    async def send_login_code(self, email: str, code: str, ttl_minutes: int) -> None:
        await asyncio.to_thread(self._send, email, code, ttl_minutes)
