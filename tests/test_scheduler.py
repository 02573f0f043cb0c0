import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import NOW, build_env, create_byol, create_pooled
from foundry_host.errors import (
    AuthorizationError,
    InvalidTransitionError,
    LicenseUnavailableError,
    NotFoundError,
    RequestValidationError,
)
from foundry_host.models.instance import Instance
from foundry_host.models.license_pool import LicensePool
from foundry_host.models.license_reservation import LicenseReservation
from foundry_host.models.scheduled_session import ScheduledSession

HOUR = 3600


async def _reservation_statuses(env, session_id):
    return [r.status for r in await env.store.reservations_for_session(session_id)]


def test_toggling_sharing_reuses_the_same_pool(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner", sharing=True)
        created = await env.store.get(LicensePool, "byol-owner")

        await env.scheduler.set_license_sharing("owner", False)
        assert (await env.store.get(LicensePool, "byol-owner")).is_active is False

        env.clock.advance(60)
        result = await env.scheduler.set_license_sharing("owner", True, 3)
        assert result["licenseId"] == "byol-owner"

        pools = await env.store.scan(LicensePool)
        assert len(pools) == 1
        assert pools[0].is_active is True
        assert pools[0].max_concurrent_users == 3
        assert pools[0].created_at == created.created_at
        assert (await env.store.get(Instance, "owner")).allow_license_sharing is True

    asyncio.run(scenario())


def test_sharing_requires_instance_or_pool(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        with pytest.raises(NotFoundError):
            await env.scheduler.set_license_sharing("ghost", True)
        await create_pooled(env, "player")
        with pytest.raises(InvalidTransitionError):
            await env.scheduler.set_license_sharing("player", True)

    asyncio.run(scenario())


def test_availability_prefers_own_then_preferred_license(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "a", sharing=True)
        await create_byol(env, "b", sharing=True)
        window = (NOW + HOUR, NOW + 2 * HOUR)

        own = await env.scheduler.check_availability("pooled", *window, requester_id="b")
        assert own["licenseId"] == "byol-b"

        preferred = await env.scheduler.check_availability(
            "pooled", *window, preferred_license_id="byol-b", requester_id="c"
        )
        assert preferred["licenseId"] == "byol-b"

        default = await env.scheduler.check_availability("pooled", *window, requester_id="c")
        assert default["licenseId"] == "byol-a"
        assert default["availableLicenses"] == ["byol-a", "byol-b"]

        with pytest.raises(RequestValidationError, match="End time must be after start time"):
            await env.scheduler.check_availability("pooled", NOW + HOUR, NOW + HOUR)

    asyncio.run(scenario())


def test_scheduling_preempts_on_demand_holder(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner", sharing=True)
        await env.lifecycle.start("owner")
        await create_pooled(env, "player")

        check = await env.scheduler.check_availability("pooled", NOW, NOW + 2 * HOUR, requester_id="player")
        assert check["available"] is False
        assert check["preemptibleLicenses"] == ["byol-owner"]

        result = await env.scheduler.schedule_session("player", "pooled", NOW, NOW + 2 * HOUR)

        assert result["success"] is True
        assert result["licenseId"] == "byol-owner"
        assert result["conflictsResolved"] == ["owner"]
        assert (await env.store.get(Instance, "owner")).status == "stopped"
        assert env.p.compute.running() == []
        assert await _reservation_statuses(env, result["sessionId"]) == ["active"]

    asyncio.run(scenario())


def test_byol_booking_needs_an_active_pool_unless_own(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner", sharing=False)
        await env.lifecycle.start("owner")

        check = await env.scheduler.check_availability(
            "byol", NOW, NOW + 2 * HOUR, preferred_license_id="byol-owner", requester_id="intruder"
        )
        assert check["available"] is False
        assert check["licenses"] == []

        result = await env.scheduler.schedule_session(
            "intruder", "byol", NOW, NOW + 2 * HOUR, preferred_license_id="byol-owner"
        )
        assert result["success"] is False
        assert result["conflictsResolved"] == []
        assert (await env.store.get(Instance, "owner")).status == "running"
        assert await env.store.scan(LicenseReservation) == []

        await env.scheduler.set_license_sharing("owner", True)
        await env.scheduler.set_license_sharing("owner", False)
        result = await env.scheduler.schedule_session(
            "intruder", "byol", NOW, NOW + 2 * HOUR, preferred_license_id="byol-owner"
        )
        assert result["success"] is False

        own = await env.scheduler.schedule_session("owner", "byol", NOW + 3 * HOUR, NOW + 4 * HOUR)
        assert own["success"] is True
        assert own["licenseId"] == "byol-owner"

    asyncio.run(scenario())


def test_overlapping_session_gets_no_license(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner", sharing=True)
        first = await env.scheduler.schedule_session("p1", "pooled", NOW + HOUR, NOW + 3 * HOUR)
        assert first["success"] is True

        second = await env.scheduler.schedule_session("p2", "pooled", NOW + 2 * HOUR, NOW + 4 * HOUR)
        assert second == {
            "success": False,
            "message": "No licenses available for the requested time period",
            "conflictsResolved": [],
        }

        adjacent = await env.scheduler.schedule_session("p2", "pooled", NOW + 3 * HOUR, NOW + 4 * HOUR)
        assert adjacent["success"] is True
        assert adjacent["licenseId"] == "byol-owner"

    asyncio.run(scenario())


def test_schedule_rejects_bad_windows(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        with pytest.raises(RequestValidationError, match="End time must be after start time"):
            await env.scheduler.schedule_session("u1", "byol", NOW + 10, NOW)
        with pytest.raises(RequestValidationError, match="in the future"):
            await env.scheduler.schedule_session("u1", "byol", NOW - 2 * HOUR, NOW - HOUR)

    asyncio.run(scenario())


def test_pooled_session_runs_on_borrowed_credentials(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner", sharing=True)
        await create_pooled(env, "player")
        own_admin_key = env.p.vault.secrets["player"].admin_key
        scheduled = await env.scheduler.schedule_session(
            "player", "pooled", NOW + 60, NOW + 60 + 2 * HOUR, title="Game night"
        )
        session_id = scheduled["sessionId"]

        with pytest.raises(InvalidTransitionError, match="has not arrived"):
            await env.scheduler.start_scheduled_session(session_id)

        env.clock.advance(60)
        result = await env.scheduler.start_scheduled_session(session_id)

        assert result["status"] == "active"
        assert result["autoShutdownAt"] == NOW + 60 + 3 * HOUR
        instance = await env.store.get(Instance, "player")
        assert instance.status == "running"
        assert instance.linked_session_id == session_id
        assert instance.license_owner_id == "byol-owner"
        assert env.p.vault.secrets["player"].username == "fu-owner"
        assert env.p.vault.secrets["player"].admin_key == own_admin_key

        with pytest.raises(LicenseUnavailableError, match="currently using this license"):
            await env.lifecycle.start("owner")

        ended = await env.scheduler.end_scheduled_session(session_id)
        assert ended["status"] == "completed"
        assert (await env.store.get(Instance, "player")).status == "stopped"
        assert (await env.store.get(ScheduledSession, session_id)).status == "completed"
        assert await _reservation_statuses(env, session_id) == ["completed"]

        with pytest.raises(InvalidTransitionError, match="Session is not active"):
            await env.scheduler.end_scheduled_session(session_id)

    asyncio.run(scenario())


def test_active_session_without_running_instance_releases_on_demand_guard(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner", sharing=True)
        await create_pooled(env, "player")
        scheduled = await env.scheduler.schedule_session("player", "pooled", NOW, NOW + 2 * HOUR)
        await env.scheduler.start_scheduled_session(scheduled["sessionId"])

        verdict = await env.scheduler.can_start_on_demand_instance("owner")
        assert verdict.allowed is False

        await env.lifecycle.stop("player")
        assert (await env.store.get(ScheduledSession, scheduled["sessionId"])).status == "active"

        verdict = await env.scheduler.can_start_on_demand_instance("owner")
        assert verdict.allowed is True
        result = await env.lifecycle.start("owner")
        assert result["status"] == "running"

    asyncio.run(scenario())


def test_start_scheduled_session_requires_an_instance(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        scheduled = await env.scheduler.schedule_session("ghost", "byol", NOW, NOW + HOUR)
        with pytest.raises(NotFoundError, match="must register an instance"):
            await env.scheduler.start_scheduled_session(scheduled["sessionId"])

    asyncio.run(scenario())


def test_on_demand_start_blocked_by_imminent_session(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner")

        later = await env.scheduler.schedule_session("owner", "byol", NOW + 2 * HOUR, NOW + 3 * HOUR)
        verdict = await env.scheduler.can_start_on_demand_instance("owner")
        assert verdict.allowed is True

        await env.scheduler.cancel_session(later["sessionId"])
        soon = await env.scheduler.schedule_session("owner", "byol", NOW + 20 * 60, NOW + HOUR)
        verdict = await env.scheduler.can_start_on_demand_instance("owner")
        assert verdict.allowed is False
        assert verdict.session_id == soon["sessionId"]

        with pytest.raises(LicenseUnavailableError, match="about to start"):
            await env.lifecycle.start("owner")

    asyncio.run(scenario())


def test_cancel_session(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner")
        scheduled = await env.scheduler.schedule_session("owner", "byol", NOW + HOUR, NOW + 2 * HOUR)
        session_id = scheduled["sessionId"]

        with pytest.raises(AuthorizationError, match="only cancel your own"):
            await env.scheduler.cancel_session(session_id, user_id="intruder")

        result = await env.scheduler.cancel_session(session_id, user_id="owner")
        assert result["status"] == "cancelled"
        assert await _reservation_statuses(env, session_id) == ["cancelled"]
        assert await env.store.active_reservations("byol-owner", NOW, NOW + 3 * HOUR) == []

        with pytest.raises(InvalidTransitionError, match="already cancelled"):
            await env.scheduler.cancel_session(session_id)

    asyncio.run(scenario())


def test_destroy_cancels_open_sessions(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await create_byol(env, "owner")
        await env.scheduler.schedule_session("owner", "byol", NOW + HOUR, NOW + 2 * HOUR)
        await env.scheduler.schedule_session("owner", "byol", NOW + 3 * HOUR, NOW + 4 * HOUR)

        result = await env.lifecycle.destroy("owner")

        assert result["cancelledSessionsCount"] == 2
        listed = await env.scheduler.list_user_sessions("owner")
        assert [s["status"] for s in listed["sessions"]] == ["cancelled", "cancelled"]
        assert await env.store.scan(LicenseReservation, status="active") == []

    asyncio.run(scenario())
