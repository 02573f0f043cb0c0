import asyncio
import json
import sys
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import NOW, RecordingPush, build_env
from foundry_host.bootstrap import get_dispatcher
from foundry_host.main import app
from foundry_host.models.instance import Instance
from foundry_host.models.license_pool import LicensePool
from foundry_host.models.notification import Notification

HOUR = 3600


async def _call(env, **event):
    response = await env.dispatcher.handle(event)
    return response["statusCode"], json.loads(response["body"])


def test_missing_parameters_and_unknown_action(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        assert await _call(env, action="status") == (
            400,
            {"error": "Missing required parameters: action, userId"},
        )
        assert await _call(env, userId="u1") == (
            400,
            {"error": "Missing required parameters: action, userId"},
        )
        assert await _call(env, action="launch-rockets", userId="u1") == (
            400,
            {"error": "Unknown action: launch-rockets"},
        )

    asyncio.run(scenario())


def test_invalid_parameters_are_client_errors(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        status, body = await _call(
            env, action="create", userId="u1", sanitizedUsername="u1", licenseType="rented"
        )
        assert status == 400
        assert "licenseType" in body["error"]

        status, body = await _call(env, action="create", userId="u1", sanitizedUsername="u1")
        assert status == 400
        assert body["error"] == "Missing Foundry credentials for BYOL license"

        status, body = await _call(env, action="update-version", userId="u1")
        assert (status, body["error"]) == (400, "Missing required parameter: foundryVersion")

        status, body = await _call(env, action="schedule-session", userId="u1", licenseType="byol")
        assert status == 400

    asyncio.run(scenario())


def test_domain_errors_are_internal_errors(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        status, body = await _call(env, action="status", userId="u1")
        assert (status, body) == (500, {"error": "Internal error: Instance not found"})

    asyncio.run(scenario())


def test_numeric_user_id_is_accepted(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        status, body = await _call(
            env,
            action="create",
            userId=123456,
            sanitizedUsername="numeric",
            licenseType="pooled",
        )
        assert status == 200
        assert body["userId"] == "123456"

    asyncio.run(scenario())


def test_owner_preempted_by_scheduled_pooled_session(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        status, _ = await _call(
            env,
            action="create",
            userId="owner",
            sanitizedUsername="owner",
            licenseType="byol",
            foundryUsername="fu",
            foundryPassword="pw",
            allowLicenseSharing=True,
        )
        assert status == 200
        status, body = await _call(env, action="start", userId="owner")
        assert (status, body["status"]) == (200, "running")
        assert body["autoShutdownAt"] == NOW + 6 * HOUR

        await _call(env, action="create", userId="player", sanitizedUsername="player", licenseType="pooled")
        status, body = await _call(
            env,
            action="schedule-session",
            userId="player",
            licenseType="pooled",
            startTime=NOW,
            endTime=NOW + 2 * HOUR,
        )
        assert status == 200
        assert body["licenseId"] == "byol-owner"
        assert body["conflictsResolved"] == ["owner"]
        session_id = body["sessionId"]

        status, body = await _call(env, action="status", userId="owner")
        assert body["status"] == "stopped"

        status, body = await _call(env, action="start-scheduled-session", userId="player")
        assert (status, body["error"]) == (400, "Missing required parameter: sessionId")

        status, body = await _call(
            env, action="start-scheduled-session", userId="player", sessionId=session_id
        )
        assert status == 200
        assert body["autoShutdownAt"] == NOW + 3 * HOUR

        status, body = await _call(env, action="start", userId="owner")
        assert status == 500
        assert "currently using this license" in body["error"]

    asyncio.run(scenario())


def test_destroy_can_keep_sharing_the_license(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await _call(
            env,
            action="create",
            userId="owner",
            sanitizedUsername="owner",
            licenseType="byol",
            foundryUsername="fu",
            foundryPassword="pw",
            allowLicenseSharing=True,
        )
        await _call(env, action="start", userId="owner")

        status, body = await _call(env, action="destroy", userId="owner", keepLicenseSharing=True)
        assert status == 200
        assert body["licenseSharingKept"] is True
        assert await env.store.get(Instance, "owner") is None
        assert (await env.store.get(LicensePool, "byol-owner")).is_active is True
        assert env.p.vault.secrets["owner"].username == "fu"

        status, body = await _call(
            env,
            action="schedule-session",
            userId="player",
            licenseType="pooled",
            startTime=NOW + HOUR,
            endTime=NOW + 2 * HOUR,
        )
        assert status == 200
        assert body["licenseId"] == "byol-owner"

    asyncio.run(scenario())


def test_back_to_back_sessions_share_one_license(tmp_path):
    async def scenario():
        env = await build_env(tmp_path)
        await _call(
            env,
            action="create",
            userId="owner",
            sanitizedUsername="owner",
            foundryUsername="fu",
            foundryPassword="pw",
            allowLicenseSharing=True,
        )

        first = await _call(
            env, action="schedule-session", userId="p1", licenseType="pooled",
            startTime=NOW + HOUR, endTime=NOW + 2 * HOUR,
        )
        second = await _call(
            env, action="schedule-session", userId="p2", licenseType="pooled",
            startTime=NOW + 2 * HOUR, endTime=NOW + 3 * HOUR,
        )
        clash = await _call(
            env, action="schedule-session", userId="p3", licenseType="pooled",
            startTime=NOW + 90 * 60, endTime=NOW + 150 * 60,
        )

        assert first[1]["success"] and second[1]["success"]
        assert clash == (
            200,
            {
                "success": False,
                "message": "No licenses available for the requested time period",
                "conflictsResolved": [],
            },
        )

        status, body = await _call(
            env, action="check-availability", userId="p3", licenseType="pooled",
            startTime=NOW + 3 * HOUR, endTime=NOW + 4 * HOUR,
        )
        assert body["available"] is True

    asyncio.run(scenario())


def test_notifications_are_pushed_and_listed(tmp_path):
    async def scenario():
        push = RecordingPush()
        env = await build_env(tmp_path, push=push)
        status, body = await _call(
            env,
            action="send-notification",
            userId="admin",
            targetUserId="424242",
            notificationType="session-ready",
            message="Ready",
            instanceUrl="https://x.vtt.example.com",
        )
        assert status == 200
        assert body["notification"]["delivered"] is True
        assert push.sent == [(424242, "Ready\nhttps://x.vtt.example.com")]

        await _call(
            env, action="send-notification", userId="web-user",
            notificationType="instance-shutdown", message="Stopped",
        )
        status, body = await _call(env, action="list-notifications", userId="web-user")
        assert body["count"] == 1
        assert body["notifications"][0]["message"] == "Stopped"
        assert body["notifications"][0]["delivered"] is True
        status, body = await _call(env, action="list-notifications", userId="web-user")
        assert body["count"] == 0

        failing = RecordingPush(delivered=False)
        env.notifications._push = failing
        await env.notifications.record("session-failed", "99", "Nope")
        rows = await env.store.scan(Notification, user_id="99")
        assert rows[0].delivered is False
        assert failing.sent == [(99, "Nope")]

    asyncio.run(scenario())


def test_http_endpoint(tmp_path):
    env = asyncio.run(build_env(tmp_path))
    app.dependency_overrides[get_dispatcher] = lambda: env.dispatcher
    try:
        with TestClient(app) as client:
            assert client.get("/health").json() == {"status": "ok"}
            assert "create" in client.get("/api/actions").json()["actions"]

            response = client.post("/api/action", json={"action": "status"})
            assert response.status_code == 400
            assert response.json()["error"] == "Missing required parameters: action, userId"

            response = client.post(
                "/api/action",
                json={"action": "create", "userId": "web", "sanitizedUsername": "web", "licenseType": "pooled"},
            )
            assert response.status_code == 200
            assert response.json()["url"] == "https://web.vtt.example.com"

            response = client.post("/api/action", json={"action": "status", "userId": "web"})
            assert response.status_code == 200
            assert response.json()["status"] == "created"
    finally:
        app.dependency_overrides.clear()
