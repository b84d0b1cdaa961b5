"""
Tests for share link issuance, URL helpers and summary fetching.
"""

import re
from datetime import UTC, datetime, timedelta

import pytest

from adapters.memory import InMemoryBackend
from core.config import SharingConfig
from core.domain.models import EndpointResponse
from core.services.session import SessionService
from core.services.share_links import (
    ShareLinkService,
    app_base_url,
    build_share_url,
    fetch_doctor_summary,
    generate_share_token,
    hash_token,
    share_token_from_url,
)

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


class MockSummaryFunctions:
    def __init__(self, response: EndpointResponse) -> None:
        self.response = response

    async def doctor_summary(self, token: str) -> EndpointResponse:
        return self.response


class TestTokens:
    def test_token_is_64_hex_chars(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{64}", generate_share_token())

    def test_tokens_are_unique(self) -> None:
        assert len({generate_share_token() for _ in range(50)}) == 50

    def test_hash_is_sha256_hex(self) -> None:
        assert hash_token("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )


class TestUrls:
    def test_share_url_format(self) -> None:
        assert build_share_url("https://t.example/app/", "f" * 64) == (
            "https://t.example/app/?share=" + "f" * 64
        )

    @pytest.mark.parametrize(
        ("pathname", "expected"),
        [
            ("/app/", "https://t.example/app/"),
            ("/app/demo.html", "https://t.example/app/"),
            ("/app", "https://t.example/app/"),
            ("/index.html", "https://t.example/"),
        ],
    )
    def test_app_base_url(self, pathname: str, expected: str) -> None:
        assert app_base_url("https://t.example", pathname) == expected

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://t.example/app/?share=abc", "abc"),
            ("https://t.example/app/?token=legacy", "legacy"),
            ("https://t.example/app/", None),
            ("https://t.example/app/?share=", None),
        ],
    )
    def test_share_token_from_url(self, url: str, expected: str | None) -> None:
        assert share_token_from_url(url) == expected


class TestShareLinkService:
    @pytest.mark.asyncio
    async def test_stores_only_the_hash(self) -> None:
        backend = InMemoryBackend()
        session = SessionService(backend)
        await session.sign_in("patient-1")
        config = SharingConfig(app_base_url="https://t.example/app/")

        url = await ShareLinkService(backend, session, config).create_doctor_share_link(now=NOW)

        token = share_token_from_url(url)
        assert token is not None
        (link,) = backend.share_links.values()
        assert link.token_hash == hash_token(token)
        assert token not in link.model_dump_json()
        assert link.household_id == session.require().household_id
        assert link.expires_at == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_requires_session(self) -> None:
        backend = InMemoryBackend()
        service = ShareLinkService(backend, SessionService(backend), SharingConfig())

        with pytest.raises(RuntimeError, match="Not authenticated"):
            await service.create_doctor_share_link()


class TestFetchDoctorSummary:
    @pytest.mark.asyncio
    async def test_refused_token_is_an_error_value(self) -> None:
        functions = MockSummaryFunctions(
            EndpointResponse(status=403, body={"error": "Share link has been revoked"})
        )

        result = await fetch_doctor_summary(functions, "t")

        assert result.is_err()
        assert result.unwrap_err().status == 403
        assert str(result.unwrap_err()) == "Share link has been revoked"

    @pytest.mark.asyncio
    async def test_summary_is_validated(self) -> None:
        body = {
            "date_range": {"start": "2024-03-01", "end": "2024-03-02"},
            "total_entries": 2,
            "severity_counts": {"severity_3": 2},
            "top_symptoms": [{"symptom": "fatigue", "count": 2}],
            "entries": [],
            "generated_at": NOW.isoformat(),
        }

        result = await fetch_doctor_summary(
            MockSummaryFunctions(EndpointResponse(status=200, body=body)), "t"
        )

        summary = result.unwrap()
        assert summary.total_entries == 2
        assert summary.top_symptoms[0].symptom == "fatigue"

    @pytest.mark.asyncio
    async def test_malformed_summary_is_an_error(self) -> None:
        result = await fetch_doctor_summary(
            MockSummaryFunctions(EndpointResponse(status=200, body={"total_entries": "many"})), "t"
        )

        assert result.unwrap_err().status == 502
