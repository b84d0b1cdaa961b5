"""
End-to-end walkthrough of the tracker against in-memory adapters.

This script exercises:
1. Configuration loading and validation
2. Offline cache install, activation and offline fallback
3. Patient and partner entries synced through a household
4. Summary, chart and trend aggregation
5. Doctor share link and summary endpoint
6. Error handling for refused operations

Run with: uv run python system_check.py
"""

import asyncio
from datetime import UTC, datetime, timedelta
from urllib.parse import urljoin

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory import (
    InMemoryAuthAdmin,
    InMemoryBackend,
    InMemoryCacheStorage,
    InMemoryKeyValueStorage,
    InMemoryWorkerLifecycle,
    StaticSiteNetwork,
)
from core.config import (
    CacheConfig,
    SharingConfig,
    SupabaseConfig,
    get_config,
    print_config_summary,
    validate_config,
)
from core.domain.models import (
    EndpointResponse,
    Role,
    create_daily_note,
    create_entry,
    create_event_entry,
    create_partner_observation,
)
from core.services.aggregation import (
    format_summary,
    get_chart_data,
    get_symptom_trend_data,
    get_top_symptoms_by_avg_severity,
)
from core.services.base import configure_logging
from core.services.edge_functions import AuthUser, EdgeFunctions
from core.services.entry_sync import SyncGateway
from core.services.household import HouseholdService, InviteClaimed
from core.services.offline_cache import CacheRequest, CacheResponse, OfflineCacheController
from core.services.session import LocalEntryRepository, SessionService
from core.services.share_links import (
    ShareLinkService,
    fetch_doctor_summary,
    share_token_from_url,
)

console = Console()

SCOPE = "http://localhost:8000/"


class LocalFunctions:
    """Routes client endpoint calls straight to the in-process handlers."""

    def __init__(self, handlers: EdgeFunctions) -> None:
        self.handlers = handlers

    async def claim_household_invite(self, access_token: str) -> EndpointResponse:
        return await self.handlers.claim_household_invite(f"Bearer {access_token}")

    async def doctor_summary(self, token: str) -> EndpointResponse:
        return await self.handlers.doctor_summary(token)


async def check_configuration() -> bool:
    """Check configuration loading and validation."""

    console.print(Panel("🔧 Checking Configuration", style="blue"))

    try:
        validate_config()
        config = get_config()
        configure_logging(config.logging.level, config.logging.format)
        console.print("✅ Configuration loaded successfully", style="green")
        print_config_summary()
        return True

    except Exception as e:
        console.print(
            f"⚠️  Environment config unavailable ({e}); using local defaults", style="yellow"
        )
        return True


async def check_offline_cache() -> bool:
    """Install a cache generation, activate it and serve offline."""

    console.print(Panel("📦 Checking Offline Cache", style="blue"))

    try:
        config = CacheConfig(scope_url=SCOPE)
        routes = {
            urljoin(SCOPE, asset): CacheResponse(status=200, body=asset.encode(), url=asset)
            for asset in config.shell_assets
        }
        network = StaticSiteNetwork(routes)
        caches = InMemoryCacheStorage()
        await caches.open_generation("tamoxifen-tracker-v0")

        controller = OfflineCacheController(config, caches, network, InMemoryWorkerLifecycle())
        await controller.install()
        deleted = await controller.activate()
        console.print(f"✅ Shell cached; removed old generations: {deleted}", style="green")

        network.online = False
        offline = await controller.handle_fetch(
            CacheRequest(url=SCOPE + "settings", mode="navigate")
        )
        console.print(f"✅ Offline navigation served from cache ({offline.body!r})", style="green")
        return True

    except Exception as e:
        console.print(f"❌ Offline cache check failed: {e}", style="red")
        return False


async def check_household_flow() -> bool:
    """Patient invites a partner, both log entries, doctor reads a summary."""

    console.print(Panel("👥 Checking Household Sync and Sharing", style="blue"))

    try:
        backend = InMemoryBackend()
        sharing = SharingConfig(app_base_url=SCOPE)
        supabase = SupabaseConfig(
            url="http://localhost:54321", anon_key="local-anon", service_role_key="local-service"
        )
        auth = InMemoryAuthAdmin(
            {"partner-token": AuthUser(id="partner-1", email="partner@example.com")}
        )
        functions = LocalFunctions(EdgeFunctions(supabase, sharing, backend, auth))

        patient = SessionService(backend)
        await patient.sign_in("patient-1", "patient@example.com", "patient-token")
        patient_households = HouseholdService(backend, patient, sharing)
        await patient_households.create_partner_invite("partner@example.com")

        partner = SessionService(backend)
        await partner.sign_in("partner-1", "partner@example.com", "partner-token")
        claimed = (
            await HouseholdService(backend, partner, sharing).claim_household_invite(functions)
        ).unwrap()
        if not isinstance(claimed, InviteClaimed):
            console.print(f"❌ Partner did not join: {claimed.reason}", style="red")
            return False
        console.print(f"✅ Partner joined household as {claimed.role.value}", style="green")

        now = datetime.now(UTC)
        patient_entries = [
            create_entry("fatigue", 2),
            create_entry("fatigue", 4),
            create_entry("hot_flashes", 5, "night sweats"),
            create_event_entry("period_started"),
            create_daily_note("patient", "Walked 20 minutes"),
        ]
        partner_entries = [create_partner_observation("seemed_tired", 3)]

        repository = LocalEntryRepository(InMemoryKeyValueStorage())
        repository.save(patient_entries)

        report = await SyncGateway(backend, patient).push(repository.load())
        await SyncGateway(backend, partner).push(partner_entries)
        console.print(f"✅ Pushed {len(report.inserted)} patient entries", style="green")

        pulled = await SyncGateway(backend, partner).pull()
        console.print(f"✅ Partner sees {len(pulled)} household entries", style="green")

        console.print(format_summary(patient_entries))

        chart = get_chart_data(patient_entries, partner_entries, 30)
        table = Table(title="Occurrences (last 30 days)")
        table.add_column("Symptom", style="cyan")
        table.add_column("Patient", style="white")
        table.add_column("Partner", style="white")
        for label, mine, theirs in zip(
            chart.bar_data.labels, chart.bar_data.patient_data, chart.bar_data.partner_data
        ):
            table.add_row(label, str(mine), str(theirs))
        console.print(table)

        top = get_top_symptoms_by_avg_severity(patient_entries, "all")
        trend = get_symptom_trend_data(patient_entries, 7, ["fatigue"])
        console.print(f"Top symptoms: {[(r.type, r.avg_severity) for r in top]}")
        console.print(f"Fatigue trend: {trend.series_by_type['fatigue']}")

        share_url = await ShareLinkService(backend, patient, sharing).create_doctor_share_link()
        token = share_token_from_url(share_url)
        assert token is not None
        summary = (await fetch_doctor_summary(functions, token)).unwrap()
        console.print(
            f"✅ Doctor summary: {summary.total_entries} entries, "
            f"top symptom {summary.top_symptoms[0].symptom}",
            style="green",
        )

        expired = await EdgeFunctions(supabase, sharing, backend, auth).doctor_summary(
            token, now=now + timedelta(days=sharing.share_link_expiry_days + 1)
        )
        console.print(f"✅ Expired link refused with {expired.status}", style="green")
        return True

    except Exception as e:
        console.print(f"❌ Household flow failed: {e}", style="red")
        return False


async def check_error_handling() -> bool:
    """Refused operations surface as exceptions or error values."""

    console.print(Panel("🛡️  Checking Error Handling", style="blue"))

    try:
        try:
            create_entry("fatigue", 7)
            console.print("❌ Out-of-range severity was accepted", style="red")
            return False
        except ValueError as e:
            console.print(f"✅ Validation error: {e}", style="green")

        backend = InMemoryBackend()
        household = await backend.create_household("patient-1")
        await backend.add_member(household.id, "partner-1", Role.PARTNER)
        partner = SessionService(backend)
        await partner.sign_in("partner-1")
        try:
            await HouseholdService(backend, partner, SharingConfig()).create_partner_invite(
                "other@example.com"
            )
            console.print("❌ Partner was allowed to invite", style="red")
            return False
        except PermissionError as e:
            console.print(f"✅ Authorization error: {e}", style="green")

        return True

    except Exception as e:
        console.print(f"❌ Error handling check failed: {e}", style="red")
        return False


async def run_all_checks() -> None:
    """Run all system checks."""

    console.print(Panel("🧪 Tamoxifen Tracker - System Check", style="bold blue"))

    checks = [
        ("Configuration", check_configuration),
        ("Offline Cache", check_offline_cache),
        ("Household Sync and Sharing", check_household_flow),
        ("Error Handling", check_error_handling),
    ]

    results = []

    for check_name, check_func in checks:
        console.print(f"\n{'=' * 60}")
        try:
            result = await check_func()
            results.append((check_name, result))
        except KeyboardInterrupt:
            console.print("\n⏹️  Checks interrupted by user", style="yellow")
            break

    console.print(f"\n{'=' * 60}")
    console.print(Panel("📋 Check Results Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Check", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for check_name, result in results:
        if result:
            summary_table.add_row(check_name, "✅ PASSED")
            passed += 1
        else:
            summary_table.add_row(check_name, "❌ FAILED")

    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} checks passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_checks())
    except KeyboardInterrupt:
        console.print("\n👋 Checks stopped by user", style="yellow")
