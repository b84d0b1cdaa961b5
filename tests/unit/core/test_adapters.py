"""
Tests for the requests and Supabase adapters.

No network is touched: requests sessions and Supabase query builders are
replaced with small recording stand-ins.
"""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
import requests

from adapters.http import RequestsNetwork, ResendEmailSender, SupabaseFunctionsClient
from adapters.supabase_backend import SupabaseAuthAdmin, SupabaseBackend
from core.config import SupabaseConfig
from core.domain.models import Role
from core.services.offline_cache import CacheRequest

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


class MockResponse:
    def __init__(self, status: int = 200, payload=None, content: bytes = b"") -> None:
        self.status_code = status
        self._payload = payload
        self.content = content
        self.headers = {"content-type": "text/plain"}
        self.url = "https://t.example/app/"

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class MockSession:
    """Records requests and replays a canned response (or raises)."""

    def __init__(self, response: MockResponse | None = None, error: Exception | None = None):
        self.response = response or MockResponse()
        self.error = error
        self.headers: dict[str, str] = {}
        self.calls: list[dict] = []

    def request(self, method: str, url: str, **kwargs) -> MockResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def supabase_config() -> SupabaseConfig:
    return SupabaseConfig(url="https://project.supabase.co", anon_key="anon")


class TestRequestsNetwork:
    @pytest.mark.asyncio
    async def test_fetch_maps_response(self) -> None:
        session = MockSession(MockResponse(content=b"<html>"))

        network = RequestsNetwork(session=session)
        response = await network.fetch(CacheRequest(url="https://t.example/app/"))

        assert response.status == 200
        assert response.body == b"<html>"
        assert session.calls[0]["method"] == "GET"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_connection_error(self) -> None:
        session = MockSession(error=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(ConnectionError, match="Fetch failed"):
            await RequestsNetwork(session=session).fetch(CacheRequest(url="https://t.example/"))


class TestSupabaseFunctionsClient:
    @pytest.mark.asyncio
    async def test_claim_sends_user_bearer(self, supabase_config: SupabaseConfig) -> None:
        session = MockSession(MockResponse(200, {"success": True, "household_id": "hh-1"}))
        client = SupabaseFunctionsClient(supabase_config, session=session)

        response = await client.claim_household_invite("user-jwt")

        call = session.calls[0]
        assert call["url"] == "https://project.supabase.co/functions/v1/claim-household-invite"
        assert call["headers"]["Authorization"] == "Bearer user-jwt"
        assert session.headers["apikey"] == "anon"
        assert response.body["household_id"] == "hh-1"

    @pytest.mark.asyncio
    async def test_doctor_summary_passes_share_param(self, supabase_config: SupabaseConfig) -> None:
        session = MockSession(MockResponse(404, {"error": "Invalid or expired share link"}))
        client = SupabaseFunctionsClient(supabase_config, session=session)

        response = await client.doctor_summary("abc")

        assert session.calls[0]["params"] == {"share": "abc"}
        assert session.calls[0]["headers"]["Authorization"] == "Bearer anon"
        assert response.status == 404
        assert not response.ok

    @pytest.mark.asyncio
    async def test_non_json_body_is_empty(self, supabase_config: SupabaseConfig) -> None:
        client = SupabaseFunctionsClient(supabase_config, session=MockSession(MockResponse(502)))

        response = await client.request_login_code("u@example.com")

        assert response.status == 502
        assert response.body == {}

    @pytest.mark.asyncio
    async def test_timeout_becomes_connection_error(self, supabase_config: SupabaseConfig) -> None:
        session = MockSession(error=requests.exceptions.Timeout("slow"))
        client = SupabaseFunctionsClient(supabase_config, session=session)

        with pytest.raises(ConnectionError):
            await client.verify_login_code("u@example.com", "123456")


class TestResendEmailSender:
    @pytest.mark.asyncio
    async def test_posts_code(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sent: list[dict] = []

        def fake_post(url: str, **kwargs) -> MockResponse:
            sent.append({"url": url, **kwargs})
            return MockResponse(200, {"id": "email-1"})

        monkeypatch.setattr(requests, "post", fake_post)

        await ResendEmailSender("re_key").send_login_code("u@example.com", "123456", 10)

        assert sent[0]["json"]["to"] == ["u@example.com"]
        assert "123456" in sent[0]["json"]["subject"]
        assert "10 minutes" in sent[0]["json"]["html"]

    @pytest.mark.asyncio
    async def test_http_error_becomes_connection_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(requests, "post", lambda url, **kwargs: MockResponse(422, {}))

        with pytest.raises(ConnectionError, match="Email send failed"):
            await ResendEmailSender("re_key").send_login_code("u@example.com", "123456", 10)


class MockQuery:
    """Chainable stand-in for a postgrest query builder."""

    def __init__(self, table: str, rows: list[dict], log: list) -> None:
        self.table = table
        self.rows = rows
        self.log = log
        self.steps: list[tuple] = []

    def __getattr__(self, name: str):
        def step(*args, **kwargs) -> "MockQuery":
            self.steps.append((name, args, kwargs))
            return self

        return step

    def execute(self) -> SimpleNamespace:
        self.log.append((self.table, self.steps))
        return SimpleNamespace(data=self.rows)


class MockClient:
    def __init__(self, rows_by_table: dict[str, list[dict]] | None = None) -> None:
        self.rows_by_table = rows_by_table or {}
        self.log: list = []

    def table(self, name: str) -> MockQuery:
        return MockQuery(name, self.rows_by_table.get(name, []), self.log)


class TestSupabaseBackend:
    @pytest.mark.asyncio
    async def test_list_entries_filters_and_orders(self) -> None:
        row = {
            "id": "row-1",
            "household_id": "hh-1",
            "occurred_at": "2024-03-09",
            "payload": {"id": "e1", "type": "fatigue", "severity": 3},
            "created_by_user_id": "u1",
        }
        client = MockClient({"entries": [row]})

        records = await SupabaseBackend(client).list_entries("hh-1")  # type: ignore[arg-type]

        assert records[0].payload["id"] == "e1"
        table, steps = client.log[0]
        assert table == "entries"
        assert ("eq", ("household_id", "hh-1"), {}) in steps
        assert ("order", ("occurred_at",), {"desc": True}) in steps

    @pytest.mark.asyncio
    async def test_missing_household_is_none(self) -> None:
        backend = SupabaseBackend(MockClient())  # type: ignore[arg-type]

        assert await backend.find_owned_household("u1") is None
        assert await backend.find_share_link("0" * 64) is None

    @pytest.mark.asyncio
    async def test_active_invite_skips_revoked_rows(self) -> None:
        base = {
            "household_id": "hh-1",
            "invited_email": "p@example.com",
            "role": "partner",
            "expires_at": "2024-03-11T00:00:00+00:00",
            "created_at": "2024-03-09T00:00:00+00:00",
        }
        client = MockClient(
            {
                "household_invites": [
                    {**base, "id": "inv-revoked", "revoked": True},
                    {**base, "id": "inv-ok", "revoked": None},
                ]
            }
        )

        backend = SupabaseBackend(client)  # type: ignore[arg-type]
        invite = await backend.find_active_invite("p@example.com", NOW)

        assert invite is not None and invite.id == "inv-ok"

    @pytest.mark.asyncio
    async def test_add_member_writes_role_value(self) -> None:
        client = MockClient(
            {"household_members": [{"household_id": "hh-1", "user_id": "u2", "role": "partner"}]}
        )

        backend = SupabaseBackend(client)  # type: ignore[arg-type]
        member = await backend.add_member("hh-1", "u2", Role.PARTNER)

        assert member.role == Role.PARTNER
        _, steps = client.log[0]
        name, args, _ = steps[0]
        assert name == "insert"
        assert args[0] == {"household_id": "hh-1", "user_id": "u2", "role": "partner"}


class TestSupabaseAuthAdmin:
    @pytest.mark.asyncio
    async def test_grant_uses_token_hash_from_link(self) -> None:
        properties = SimpleNamespace(
            action_link="https://p.supabase.co/auth/v1/verify?token_hash=th-1&type=magiclink",
            hashed_token="fallback",
        )
        admin = SimpleNamespace(generate_link=lambda params: SimpleNamespace(properties=properties))
        client = SimpleNamespace(auth=SimpleNamespace(admin=admin))

        auth = SupabaseAuthAdmin(client)  # type: ignore[arg-type]
        grant = await auth.issue_verification("u@example.com")

        assert grant.token == "th-1"
        assert grant.type == "token_hash"

    @pytest.mark.asyncio
    async def test_rejected_token_is_none(self) -> None:
        def get_user(jwt: str):
            raise RuntimeError("invalid JWT")

        client = SimpleNamespace(auth=SimpleNamespace(get_user=get_user))

        assert await SupabaseAuthAdmin(client).get_user("bad") is None  # type: ignore[arg-type]
