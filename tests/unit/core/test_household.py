"""
Tests for invites, members and invite claiming.
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from adapters.memory import InMemoryBackend, InMemoryKeyValueStorage
from core.config import SharingConfig
from core.domain.models import EndpointResponse, HouseholdInvite, Role
from core.services.household import (
    HouseholdService,
    InviteClaimed,
    NoPendingInvite,
    is_pending,
    pending_invites,
)
from core.services.session import LocalEntryRepository, SessionService

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


def invite(**overrides) -> HouseholdInvite:
    fields = {
        "id": "inv-1",
        "household_id": "hh-1",
        "invited_email": "partner@example.com",
        "expires_at": NOW + timedelta(days=1),
        "created_at": NOW - timedelta(days=1),
    }
    fields.update(overrides)
    return HouseholdInvite(**fields)


class MockInviteFunctions:
    """Canned claim-household-invite responses."""

    def __init__(self, response: EndpointResponse | None = None, fail: bool = False) -> None:
        self.response = response
        self.fail = fail
        self.tokens: list[str] = []

    async def claim_household_invite(self, access_token: str) -> EndpointResponse:
        self.tokens.append(access_token)
        if self.fail:
            raise ConnectionError("network down")
        assert self.response is not None
        return self.response


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
async def session(backend: InMemoryBackend) -> SessionService:
    service = SessionService(backend)
    await service.sign_in("patient-1", "patient@example.com", "patient-token")
    return service


@pytest.fixture
def households(backend: InMemoryBackend, session: SessionService) -> HouseholdService:
    return HouseholdService(backend, session, SharingConfig())


class TestPendingFilter:
    @given(
        expired=st.booleans(),
        accepted=st.booleans(),
        revoked=st.sampled_from([True, False, None]),
    )
    def test_pending_only_when_all_three_hold(
        self, expired: bool, accepted: bool, revoked: bool | None
    ) -> None:
        candidate = invite(
            expires_at=NOW - timedelta(minutes=1) if expired else NOW + timedelta(minutes=1),
            accepted_at=NOW if accepted else None,
            revoked=revoked,
        )

        assert is_pending(candidate, NOW) is (not expired and not accepted and not revoked)

    def test_pending_invites_newest_first(self) -> None:
        old = invite(id="old", created_at=NOW - timedelta(days=3))
        new = invite(id="new", created_at=NOW - timedelta(hours=1))
        gone = invite(id="gone", revoked=True)

        assert [i.id for i in pending_invites([old, gone, new], NOW)] == ["new", "old"]


class TestHouseholdService:
    @pytest.mark.asyncio
    async def test_patient_creates_normalized_invite(self, households: HouseholdService) -> None:
        created = await households.create_partner_invite("  Partner@Example.COM ", now=NOW)

        assert created.invited_email == "partner@example.com"
        assert created.role == Role.PARTNER
        assert created.expires_at == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_partner_cannot_invite(self, backend: InMemoryBackend) -> None:
        household = await backend.create_household("patient-2")
        await backend.add_member(household.id, "partner-2", Role.PARTNER)
        session = SessionService(backend)
        await session.sign_in("partner-2")

        with pytest.raises(PermissionError, match="Only patient can invite partners"):
            await HouseholdService(backend, session, SharingConfig()).create_partner_invite(
                "x@example.com"
            )

    @pytest.mark.asyncio
    async def test_revoked_invite_leaves_pending_list(self, households: HouseholdService) -> None:
        created = await households.create_partner_invite("partner@example.com")

        await households.revoke_invite(created.id)

        assert await households.get_pending_invites() == []

    @pytest.mark.asyncio
    async def test_members_show_accepted_email(
        self, households: HouseholdService, backend: InMemoryBackend, session: SessionService
    ) -> None:
        household_id = session.require().household_id
        created = await households.create_partner_invite("partner@example.com")
        await backend.add_member(household_id, "partner-1", Role.PARTNER)
        await backend.add_member(household_id, "partner-2", Role.PARTNER)
        await backend.mark_invite_accepted(created.id, "partner-1", NOW)

        members = {m.user_id: m.email for m in await households.get_household_members()}

        assert members == {"partner-1": "partner@example.com", "partner-2": "Unknown"}

    @pytest.mark.asyncio
    async def test_remove_partner(
        self, households: HouseholdService, backend: InMemoryBackend, session: SessionService
    ) -> None:
        await backend.add_member(session.require().household_id, "partner-1", Role.PARTNER)

        await households.remove_partner("partner-1")

        assert backend.members == []

    @pytest.mark.asyncio
    async def test_display_names_round_trip(self, households: HouseholdService) -> None:
        repository = LocalEntryRepository(InMemoryKeyValueStorage())

        await households.sync_display_name(Role.PATIENT, "  Alex ")
        await households.fetch_display_names(repository)

        assert repository.display_name(Role.PATIENT) == "Alex"


class TestClaimInvite:
    @pytest.mark.asyncio
    async def test_successful_claim_adopts_household(
        self, households: HouseholdService, session: SessionService
    ) -> None:
        functions = MockInviteFunctions(
            EndpointResponse(
                status=200, body={"success": True, "household_id": "hh-9", "role": "partner"}
            )
        )

        result = await households.claim_household_invite(functions)

        assert result.unwrap() == InviteClaimed(household_id="hh-9", role=Role.PARTNER)
        assert functions.tokens == ["patient-token"]
        assert session.require().household_id == "hh-9"
        assert session.require().role == Role.PARTNER

    @pytest.mark.parametrize("role", ["caregiver", None])
    @pytest.mark.asyncio
    async def test_unknown_or_missing_role_defaults_to_partner(
        self, households: HouseholdService, role: str | None
    ) -> None:
        functions = MockInviteFunctions(
            EndpointResponse(
                status=200, body={"success": True, "household_id": "hh-9", "role": role}
            )
        )

        result = await households.claim_household_invite(functions)

        assert result.unwrap() == InviteClaimed(household_id="hh-9", role=Role.PARTNER)

    @pytest.mark.parametrize(
        ("status", "reason"), [(404, "no_invite"), (401, "unauthorized"), (500, "server_error")]
    )
    @pytest.mark.asyncio
    async def test_failed_statuses_mean_no_invite(
        self, households: HouseholdService, session: SessionService, status: int, reason: str
    ) -> None:
        before = session.require().household_id
        functions = MockInviteFunctions(EndpointResponse(status=status, body={"error": "x"}))

        result = await households.claim_household_invite(functions)

        assert result.unwrap() == NoPendingInvite(reason=reason)
        assert session.require().household_id == before

    @pytest.mark.asyncio
    async def test_transport_failure_is_an_error_result(self, households: HouseholdService) -> None:
        result = await households.claim_household_invite(MockInviteFunctions(fail=True))

        assert result.is_err()
        assert isinstance(result.unwrap_err(), ConnectionError)

    @pytest.mark.asyncio
    async def test_signed_out_user_has_no_invite(
        self, households: HouseholdService, session: SessionService
    ) -> None:
        session.sign_out()
        functions = MockInviteFunctions()

        result = await households.claim_household_invite(functions)

        assert result.unwrap() == NoPendingInvite(reason="not_signed_in")
        assert functions.tokens == []
