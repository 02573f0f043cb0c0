"""Single command entrypoint: ``{action, userId, ...}`` in, ``{statusCode, body}`` out."""

import json
import logging
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from foundry_host.errors import OrchestratorError, RequestValidationError


class ActionEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    action: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    sanitized_username: Optional[str] = Field(default=None, alias="sanitizedUsername")
    foundry_username: Optional[str] = Field(default=None, alias="foundryUsername")
    foundry_password: Optional[str] = Field(default=None, alias="foundryPassword")
    license_type: Optional[Literal["byol", "pooled"]] = Field(default=None, alias="licenseType")
    allow_license_sharing: Optional[bool] = Field(default=None, alias="allowLicenseSharing")
    max_concurrent_users: Optional[int] = Field(default=None, alias="maxConcurrentUsers", ge=1)
    selected_license_id: Optional[str] = Field(default=None, alias="selectedLicenseId")
    keep_license_sharing: bool = Field(default=False, alias="keepLicenseSharing")
    foundry_version: Optional[str] = Field(default=None, alias="foundryVersion")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    start_time: Optional[int] = Field(default=None, alias="startTime")
    end_time: Optional[int] = Field(default=None, alias="endTime")
    preferred_license_id: Optional[str] = Field(default=None, alias="preferredLicenseId")
    title: Optional[str] = None
    description: Optional[str] = None
    target_user_id: Optional[str] = Field(default=None, alias="targetUserId")
    force_reason: Optional[str] = Field(default=None, alias="forceReason")
    notification_type: Optional[
        Literal["session-ready", "session-failed", "instance-shutdown"]
    ] = Field(default=None, alias="notificationType")
    message: Optional[str] = None
    instance_url: Optional[str] = Field(default=None, alias="instanceUrl")

    def require(self, *fields: str) -> None:
        for name in fields:
            if getattr(self, name) in (None, ""):
                alias = type(self).model_fields[name].alias or name
                raise RequestValidationError(f"Missing required parameter: {alias}")


def _response(status_code: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(payload, default=str),
    }


class ActionDispatcher:
    def __init__(self, lifecycle, scheduler, auto_shutdown, admin, notifications):
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.auto_shutdown = auto_shutdown
        self.admin = admin
        self.notifications = notifications
        self._handlers = {
            "create": self._create,
            "start": self._start,
            "stop": self._stop,
            "destroy": self._destroy,
            "delete": self._delete,
            "status": self._status,
            "list-all": self._list_all,
            "update-version": self._update_version,
            "schedule-session": self._schedule_session,
            "cancel-session": self._cancel_session,
            "list-sessions": self._list_sessions,
            "set-license-sharing": self._set_license_sharing,
            "check-availability": self._check_availability,
            "start-scheduled-session": self._start_scheduled_session,
            "end-scheduled-session": self._end_scheduled_session,
            "auto-shutdown-check": self._auto_shutdown_check,
            "prepare-sessions": self._prepare_sessions,
            "shutdown-stats": self._shutdown_stats,
            "admin-overview": self._admin_overview,
            "admin-force-shutdown": self._admin_force_shutdown,
            "admin-cancel-session": self._admin_cancel_session,
            "admin-cancel-all-sessions": self._admin_cancel_all_sessions,
            "admin-system-maintenance": self._admin_system_maintenance,
            "admin-maintenance-reset": self._admin_maintenance_reset,
            "send-notification": self._send_notification,
            "list-notifications": self._list_notifications,
        }

    @property
    def actions(self):
        return sorted(self._handlers)

    async def handle(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(raw, dict) or not raw.get("action") or not raw.get("userId"):
            return _response(400, {"error": "Missing required parameters: action, userId"})

        try:
            event = ActionEvent.model_validate(raw)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            return _response(400, {"error": f"Invalid parameter {field}: {first['msg']}"})

        handler = self._handlers.get(event.action)
        if handler is None:
            return _response(400, {"error": f"Unknown action: {event.action}"})

        logging.info("Action %s for user %s", event.action, event.user_id)
        try:
            payload = await handler(event)
        except RequestValidationError as exc:
            logging.info("Rejected %s for user %s: %s", event.action, event.user_id, exc)
            return _response(400, {"error": str(exc)})
        except OrchestratorError as exc:
            logging.warning("Action %s failed for user %s: %s", event.action, event.user_id, exc)
            return _response(exc.status_code, {"error": f"Internal error: {exc}"})
        except Exception as exc:
            logging.exception("Action %s crashed for user %s", event.action, event.user_id)
            return _response(500, {"error": f"Internal error: {exc}"})
        return _response(200, payload)

    # -- instance lifecycle --------------------------------------------------

    async def _create(self, event: ActionEvent):
        return await self.lifecycle.create(
            event.user_id,
            event.sanitized_username,
            license_type=event.license_type or "byol",
            foundry_username=event.foundry_username,
            foundry_password=event.foundry_password,
            allow_license_sharing=bool(event.allow_license_sharing),
            max_concurrent_users=event.max_concurrent_users or 1,
            selected_license_id=event.selected_license_id,
        )

    async def _start(self, event: ActionEvent):
        return await self.lifecycle.start(event.user_id)

    async def _stop(self, event: ActionEvent):
        return await self.lifecycle.stop(event.user_id)

    async def _destroy(self, event: ActionEvent):
        return await self.lifecycle.destroy(
            event.user_id, keep_license_sharing=event.keep_license_sharing
        )

    async def _delete(self, event: ActionEvent):
        return await self.lifecycle.delete_user(event.user_id)

    async def _status(self, event: ActionEvent):
        return await self.lifecycle.status(event.user_id)

    async def _list_all(self, event: ActionEvent):
        return await self.lifecycle.list_all()

    async def _update_version(self, event: ActionEvent):
        event.require("foundry_version")
        return await self.lifecycle.update_version(event.user_id, event.foundry_version)

    # -- scheduling ----------------------------------------------------------

    async def _schedule_session(self, event: ActionEvent):
        event.require("start_time", "end_time", "license_type")
        return await self.scheduler.schedule_session(
            event.user_id,
            event.license_type,
            event.start_time,
            event.end_time,
            preferred_license_id=event.preferred_license_id,
            title=event.title,
            description=event.description,
        )

    async def _cancel_session(self, event: ActionEvent):
        event.require("session_id")
        return await self.scheduler.cancel_session(event.session_id, user_id=event.user_id)

    async def _list_sessions(self, event: ActionEvent):
        return await self.scheduler.list_user_sessions(event.user_id)

    async def _set_license_sharing(self, event: ActionEvent):
        event.require("allow_license_sharing")
        return await self.scheduler.set_license_sharing(
            event.user_id, event.allow_license_sharing, event.max_concurrent_users
        )

    async def _check_availability(self, event: ActionEvent):
        event.require("start_time", "end_time", "license_type")
        return await self.scheduler.check_availability(
            event.license_type,
            event.start_time,
            event.end_time,
            preferred_license_id=event.preferred_license_id,
            requester_id=event.user_id,
        )

    async def _start_scheduled_session(self, event: ActionEvent):
        event.require("session_id")
        return await self.scheduler.start_scheduled_session(event.session_id)

    async def _end_scheduled_session(self, event: ActionEvent):
        event.require("session_id")
        return await self.scheduler.end_scheduled_session(event.session_id)

    # -- sweep ---------------------------------------------------------------

    async def _auto_shutdown_check(self, event: ActionEvent):
        return await self.auto_shutdown.check_and_shutdown_expired_instances()

    async def _prepare_sessions(self, event: ActionEvent):
        return await self.auto_shutdown.prepare_for_upcoming_sessions()

    async def _shutdown_stats(self, event: ActionEvent):
        return await self.auto_shutdown.get_auto_shutdown_stats()

    # -- admin ---------------------------------------------------------------

    async def _admin_overview(self, event: ActionEvent):
        return await self.admin.overview()

    async def _admin_force_shutdown(self, event: ActionEvent):
        return await self.admin.force_shutdown(event.user_id, event.target_user_id, event.force_reason)

    async def _admin_cancel_session(self, event: ActionEvent):
        return await self.admin.cancel_session(event.user_id, event.session_id, event.force_reason)

    async def _admin_cancel_all_sessions(self, event: ActionEvent):
        return await self.admin.cancel_all_sessions(event.user_id, event.force_reason)

    async def _admin_system_maintenance(self, event: ActionEvent):
        return await self.admin.system_maintenance(event.user_id, event.force_reason)

    async def _admin_maintenance_reset(self, event: ActionEvent):
        return await self.admin.maintenance_reset(event.user_id, event.force_reason)

    # -- notifications -------------------------------------------------------

    async def _send_notification(self, event: ActionEvent):
        event.require("notification_type", "message")
        target = event.target_user_id or event.user_id
        notification = await self.notifications.record(
            event.notification_type,
            target,
            event.message,
            session_id=event.session_id,
            instance_url=event.instance_url,
        )
        return {"message": "Notification recorded", "notification": notification.to_dict()}

    async def _list_notifications(self, event: ActionEvent):
        pending = await self.notifications.pending_for_user(event.user_id)
        return {"notifications": [n.to_dict() for n in pending], "count": len(pending)}
