"""Operator actions: overview, forced shutdowns and bulk cancellation."""

import logging
from typing import Dict, List, Optional

from foundry_host.errors import InvalidTransitionError, NotFoundError
from foundry_host.models.instance import Instance, InstanceStatus
from foundry_host.models.license_pool import LicensePool
from foundry_host.models.license_reservation import LicenseReservation, ReservationStatus
from foundry_host.models.scheduled_session import OPEN_SESSION_STATUSES, SessionStatus

DAY = 24 * 3600
OVERVIEW_WINDOW = DAY
RECENT_ACTIVITY_WINDOW = 2 * 3600
BULK_CANCEL_PAST = 30 * DAY
BULK_CANCEL_FUTURE = 365 * DAY
DEFAULT_REASON = "No reason provided"


class AdminService:
    def __init__(self, store, lifecycle, scheduler, auto_shutdown):
        self.store = store
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.auto_shutdown = auto_shutdown

    async def overview(self) -> Dict:
        now = self.store.now()
        instances = await self.store.scan(Instance)
        sessions = await self.store.sessions_in_range(now - OVERVIEW_WINDOW, now + OVERVIEW_WINDOW)
        pools = await self.store.scan(LicensePool)

        running = [i for i in instances if i.status == InstanceStatus.RUNNING.value]
        stopped = [i for i in instances if i.status != InstanceStatus.RUNNING.value]
        active_sessions = [s for s in sessions if s.status == SessionStatus.ACTIVE.value]
        upcoming = [
            s for s in sessions if s.status == SessionStatus.SCHEDULED.value and s.start_time > now
        ]
        recent = sorted(
            (i for i in instances if i.updated_at >= now - RECENT_ACTIVITY_WINDOW),
            key=lambda i: i.updated_at,
            reverse=True,
        )

        return {
            "summary": {
                "totalInstances": len(instances),
                "runningInstances": len(running),
                "stoppedInstances": len(stopped),
                "byolInstances": sum(1 for i in instances if i.license_type == "byol"),
                "pooledInstances": sum(1 for i in instances if i.license_type == "pooled"),
                "activeSessions": len(active_sessions),
                "upcomingSessions": len(upcoming),
                "activeLicensePools": sum(1 for p in pools if p.is_active),
                "totalLicensePools": len(pools),
            },
            "instances": {
                "running": [i.to_dict() for i in running],
                "stopped": [i.to_dict() for i in stopped],
            },
            "sessions": {
                "active": [s.to_dict() for s in active_sessions],
                "upcoming": [s.to_dict() for s in sorted(upcoming, key=lambda s: s.start_time)],
            },
            "licensePools": [p.to_dict() for p in sorted(pools, key=lambda p: p.license_id)],
            "autoShutdown": await self.auto_shutdown.get_auto_shutdown_stats(),
            "recentActivity": [
                {"userId": i.user_id, "status": i.status, "updatedAt": i.updated_at}
                for i in recent
            ],
            "generatedAt": now,
        }

    async def force_shutdown(self, admin_id: str, target_user_id: Optional[str], reason: Optional[str] = None) -> Dict:
        reason = reason or DEFAULT_REASON
        instance = await self.store.get(Instance, target_user_id) if target_user_id else None
        if instance is None:
            raise NotFoundError("Target user instance not found")
        if instance.status != InstanceStatus.RUNNING.value:
            raise InvalidTransitionError("Instance is not running")

        logging.warning(
            "Admin %s force-stopping instance of user %s: %s", admin_id, target_user_id, reason
        )
        await self.lifecycle.stop(target_user_id)
        if instance.linked_session_id:
            await self.scheduler.complete_session(instance.linked_session_id)
        return {
            "message": "Instance force-stopped",
            "targetUserId": target_user_id,
            "adminId": admin_id,
            "reason": reason,
        }

    async def cancel_session(self, admin_id: str, session_id: Optional[str], reason: Optional[str] = None) -> Dict:
        reason = reason or DEFAULT_REASON
        if not session_id:
            raise NotFoundError("Session not found")
        logging.warning("Admin %s cancelling session %s: %s", admin_id, session_id, reason)
        result = await self.scheduler.cancel_session(session_id, stop_instance=True)
        result.update({"adminId": admin_id, "reason": reason})
        return result

    async def _cancel_open_sessions(self) -> Dict:
        now = self.store.now()
        sessions = await self.store.sessions_in_range(
            now - BULK_CANCEL_PAST, now + BULK_CANCEL_FUTURE, statuses=OPEN_SESSION_STATUSES
        )
        cancelled: List[str] = []
        errors = []
        for session in sessions:
            try:
                await self.scheduler.cancel_session(session.session_id, stop_instance=True)
            except Exception as exc:
                logging.exception("Bulk cancel failed for session %s", session.session_id)
                errors.append({"sessionId": session.session_id, "error": str(exc)})
                continue
            cancelled.append(session.session_id)
        return {"cancelledSessions": cancelled, "errors": errors}

    async def cancel_all_sessions(self, admin_id: str, reason: Optional[str] = None) -> Dict:
        reason = reason or DEFAULT_REASON
        logging.warning("Admin %s cancelling all sessions: %s", admin_id, reason)
        result = await self._cancel_open_sessions()
        return {
            "message": f"Cancelled {len(result['cancelledSessions'])} sessions",
            "cancelledCount": len(result["cancelledSessions"]),
            "adminId": admin_id,
            "reason": reason,
            **result,
        }

    async def system_maintenance(self, admin_id: str, reason: Optional[str] = None) -> Dict:
        reason = reason or DEFAULT_REASON
        logging.warning("Admin %s starting system maintenance: %s", admin_id, reason)
        sessions = await self._cancel_open_sessions()

        stopped, errors = [], list(sessions["errors"])
        for instance in await self.store.scan(Instance, status=InstanceStatus.RUNNING):
            try:
                await self.lifecycle.stop(instance.user_id, only_if_status=[InstanceStatus.RUNNING])
            except Exception as exc:
                logging.exception("Maintenance stop failed for user %s", instance.user_id)
                errors.append({"userId": instance.user_id, "error": str(exc)})
                continue
            stopped.append(instance.user_id)

        return {
            "message": "System maintenance completed",
            "cancelledSessions": sessions["cancelledSessions"],
            "stoppedInstances": stopped,
            "errors": errors,
            "adminId": admin_id,
            "reason": reason,
        }

    async def maintenance_reset(self, admin_id: str, reason: Optional[str] = None) -> Dict:
        """Cancel sessions, release every reservation and reset all pools to active."""
        reason = reason or DEFAULT_REASON
        logging.warning("Admin %s resetting scheduling state: %s", admin_id, reason)
        sessions = await self._cancel_open_sessions()

        released = 0
        for reservation in await self.store.all_active_reservations():
            await self.store.update(
                LicenseReservation,
                reservation.reservation_id,
                {"status": ReservationStatus.CANCELLED},
            )
            released += 1

        pools = await self.store.scan(LicensePool)
        for pool in pools:
            await self.store.update(LicensePool, pool.license_id, {"is_active": True})

        return {
            "message": "Maintenance reset completed",
            "cancelledSessions": sessions["cancelledSessions"],
            "releasedReservations": released,
            "resetPools": [p.license_id for p in pools],
            "errors": sessions["errors"],
            "adminId": admin_id,
            "reason": reason,
        }
