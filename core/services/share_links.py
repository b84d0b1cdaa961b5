"""
Doctor share links.

A share link is a random 256-bit token carried only in the URL; the backend
stores its SHA-256 digest. Revoking or expiring the stored row disables the
link, and the raw token can never be recovered from storage.
"""

import hashlib
import secrets
from datetime import UTC, datetime, timedelta
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

import structlog
from pydantic import ValidationError

from core.config import SharingConfig
from core.domain.models import DoctorSummary, EndpointResponse, ShareLink
from core.services.base import Result
from core.services.session import SessionService

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 32


class ShareLinkStore(Protocol):
    """Remote ``share_links`` table."""

    async def insert_share_link(
        self, household_id: str, token_hash: str, expires_at: datetime
    ) -> ShareLink: ...

    async def find_share_link(self, token_hash: str) -> ShareLink | None: ...

    async def touch_share_link(self, link_id: str, accessed_at: datetime) -> None: ...


class SummaryFunctions(Protocol):
    """Client side of the doctor-summary endpoint."""

    async def doctor_summary(self, token: str) -> EndpointResponse: ...


class ShareLinkError(Exception):
    """A share token the backend refused (unknown, revoked or expired)."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


def generate_share_token() -> str:
    """64 hex characters of cryptographic randomness."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def build_share_url(base_url: str, token: str) -> str:
    return f"{base_url}?share={token}"


def app_base_url(origin: str, pathname: str) -> str:
    """
    Directory URL of the app for a page location.

    ``/app/demo.html`` -> ``/app/``; ``/app`` (no extension) -> ``/app/``.
    """
    if pathname.endswith("/"):
        base_path = pathname
    elif "." in pathname:
        base_path = pathname[: pathname.rfind("/") + 1]
    else:
        base_path = pathname + "/"
    return origin + base_path


def share_token_from_url(url: str) -> str | None:
    """Token from ``?share=`` (or legacy ``?token=``); None outside share mode."""
    params = parse_qs(urlsplit(url).query)
    for name in ("share", "token"):
        values = params.get(name)
        if values and values[0]:
            return values[0]
    return None


class ShareLinkService:
    """Issue share links for the signed-in household and read them back."""

    def __init__(
        self, store: ShareLinkStore, session: SessionService, config: SharingConfig
    ) -> None:
        self.store = store
        self.session = session
        self.config = config
        self.logger = logger.bind(component="share_links")

    async def create_doctor_share_link(self, now: datetime | None = None) -> str:
        context = self.session.require_household()
        assert context.household_id is not None

        token = generate_share_token()
        expires_at = (now or datetime.now(UTC)) + timedelta(
            days=self.config.share_link_expiry_days
        )
        link = await self.store.insert_share_link(
            household_id=context.household_id,
            token_hash=hash_token(token),
            expires_at=expires_at,
        )
        self.logger.info("share_link_created", link_id=link.id, expires_at=expires_at.isoformat())
        return build_share_url(self.config.app_base_url, token)


async def fetch_doctor_summary(
    functions: SummaryFunctions, token: str
) -> Result[DoctorSummary, ShareLinkError]:
    """Summary for a share token; refused tokens come back as errors, not raises."""
    response = await functions.doctor_summary(token)
    if not response.ok:
        message = str(response.body.get("error") or "Failed to fetch summary")
        logger.info("doctor_summary_refused", status=response.status, error=message)
        return Result.err(ShareLinkError(response.status, message))
    try:
        return Result.ok(DoctorSummary.model_validate(response.body))
    except ValidationError as e:
        logger.error("doctor_summary_malformed", errors=e.error_count())
        return Result.err(ShareLinkError(502, "Malformed summary response"))
