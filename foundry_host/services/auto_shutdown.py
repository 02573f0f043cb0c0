"""Time budgets for running instances and the periodic sweep that enforces them."""

import logging
from typing import Dict, List, Optional

from foundry_host.models.instance import Instance, InstanceStatus, LicenseType
from foundry_host.models.notification import NotificationType
from foundry_host.models.scheduled_session import ScheduledSession, SessionStatus

HOUR = 3600
ON_DEMAND_LIMIT = 6 * HOUR
POOLED_DEFAULT_LIMIT = 4 * HOUR
SESSION_GRACE = HOUR
PREPARE_LOOKAHEAD = 5 * 60


def calculate_auto_shutdown_time(license_type: str, started_at: int, session_end_time: Optional[int] = None) -> int:
    if session_end_time is not None:
        return session_end_time + SESSION_GRACE
    if license_type == LicenseType.BYOL.value:
        return started_at + ON_DEMAND_LIMIT
    return started_at + POOLED_DEFAULT_LIMIT


async def emergency_shutdown_for_scheduled_session(store, lifecycle, license_id: str, exclude_user_id: Optional[str] = None) -> List[str]:
    """Stop every running on-demand instance bound to ``license_id``.

    Instances linked to a scheduled session are left alone, as is
    ``exclude_user_id``.  Returns the ids of the users that were stopped.
    """
    stopped = []
    candidates = await store.scan(
        Instance,
        license_owner_id=license_id,
        status=[InstanceStatus.RUNNING, InstanceStatus.STARTING],
        linked_session_id=None,
    )
    for instance in candidates:
        if instance.user_id == exclude_user_id:
            continue
        logging.warning(
            "Preempting on-demand instance of user %s to free license %s",
            instance.user_id,
            license_id,
        )
        result = await lifecycle.stop(
            instance.user_id,
            only_if_status=[InstanceStatus.RUNNING, InstanceStatus.STARTING],
        )
        if result is not None:
            stopped.append(instance.user_id)
    return stopped


class AutoShutdownManager:
    def __init__(self, store, lifecycle, scheduler, notifications=None):
        self.store = store
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.notifications = notifications

    calculate_auto_shutdown_time = staticmethod(calculate_auto_shutdown_time)

    async def emergency_shutdown_for_scheduled_session(self, license_id: str, exclude_user_id: Optional[str] = None) -> List[str]:
        return await emergency_shutdown_for_scheduled_session(
            self.store, self.lifecycle, license_id, exclude_user_id
        )

    async def check_and_shutdown_expired_instances(self) -> Dict:
        now = self.store.now()
        running = await self.store.scan(Instance, status=InstanceStatus.RUNNING)
        expired = [i for i in running if i.auto_shutdown_at is not None and i.auto_shutdown_at <= now]
        shut_down = []
        errors = []

        for instance in expired:
            reason = self._shutdown_reason(instance, now)
            try:
                result = await self.lifecycle.stop(
                    instance.user_id, only_if_status=[InstanceStatus.RUNNING]
                )
            except Exception as exc:
                logging.exception("Auto-shutdown failed for user %s", instance.user_id)
                errors.append({"userId": instance.user_id, "error": str(exc)})
                continue
            if result is None:
                continue
            logging.info("%s (user %s)", reason, instance.user_id)
            shut_down.append({"userId": instance.user_id, "reason": reason})

            if instance.linked_session_id:
                await self.scheduler.complete_session(instance.linked_session_id)
            if self.notifications is not None:
                await self.notifications.record(
                    NotificationType.INSTANCE_SHUTDOWN,
                    instance.user_id,
                    reason,
                    session_id=instance.linked_session_id,
                )

        return {
            "checked": len(running),
            "shutdownCount": len(shut_down),
            "shutdownInstances": shut_down,
            "errors": errors,
        }

    @staticmethod
    def _shutdown_reason(instance: Instance, now: int) -> str:
        if instance.linked_session_id:
            return "Auto-shutdown: Scheduled session ended + 1 hour grace period"
        hours = (now - (instance.started_at or now)) / HOUR
        limit = 6 if instance.license_type == LicenseType.BYOL.value else 4
        return f"Auto-shutdown: On-demand instance ran for {hours:.1f} hours ({limit}h limit)"

    async def prepare_for_upcoming_sessions(self) -> Dict:
        now = self.store.now()
        scheduled = await self.store.scan(ScheduledSession, status=SessionStatus.SCHEDULED)
        started, failed, expired, preempted = [], [], [], []

        for session in sorted(scheduled, key=lambda s: s.start_time):
            if session.end_time <= now:
                try:
                    await self.scheduler.cancel_session(session.session_id)
                except Exception as exc:
                    logging.exception("Could not expire scheduled session %s", session.session_id)
                    failed.append({"sessionId": session.session_id, "error": str(exc)})
                    continue
                expired.append(session.session_id)
                continue
            if session.start_time > now + PREPARE_LOOKAHEAD:
                continue

            try:
                preempted.extend(
                    await self.emergency_shutdown_for_scheduled_session(
                        session.license_id, exclude_user_id=session.user_id
                    )
                )
                if session.start_time > now:
                    continue
                result = await self.scheduler.start_scheduled_session(session.session_id)
            except Exception as exc:
                logging.exception("Could not start scheduled session %s", session.session_id)
                await self._fail_session(session, exc)
                failed.append({"sessionId": session.session_id, "error": str(exc)})
                continue

            started.append(session.session_id)
            if self.notifications is not None:
                title = session.title or "Foundry VTT Session"
                await self.notifications.record(
                    NotificationType.SESSION_READY,
                    session.user_id,
                    f'Your scheduled session "{title}" is now ready!',
                    session_id=session.session_id,
                    instance_url=result.get("url"),
                )

        return {
            "processed": len(started) + len(failed),
            "started": started,
            "failed": failed,
            "expired": expired,
            "preemptedUsers": preempted,
        }

    async def _fail_session(self, session: ScheduledSession, exc: Exception) -> None:
        try:
            await self.scheduler.cancel_session(session.session_id)
        except Exception:
            logging.exception("Could not cancel failed session %s", session.session_id)
        if self.notifications is not None:
            title = session.title or "Foundry VTT Session"
            await self.notifications.record(
                NotificationType.SESSION_FAILED,
                session.user_id,
                f'Your scheduled session "{title}" could not be started: {exc}',
                session_id=session.session_id,
            )

    async def get_auto_shutdown_stats(self) -> Dict:
        now = self.store.now()
        running = await self.store.scan(Instance, status=InstanceStatus.RUNNING)
        timed = [i for i in running if i.auto_shutdown_at is not None]
        overdue = [i for i in timed if i.auto_shutdown_at <= now]
        upcoming = [i.auto_shutdown_at - now for i in timed if i.auto_shutdown_at > now]
        return {
            "totalRunning": len(running),
            "scheduledForShutdown": len(timed),
            "overdue": len(overdue),
            "nextShutdownIn": min(upcoming) if upcoming else None,
        }
