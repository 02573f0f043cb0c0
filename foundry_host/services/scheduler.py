"""License pooling and scheduled sessions.

A licence is *available* for a window when nothing holds it: no active
reservation or open session overlaps the window and no on-demand instance is
currently running on it.  A licence whose only holders are on-demand
instances is *preemptible*: scheduling a session there stops those instances.
Intervals are half-open, so back-to-back sessions do not conflict.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from foundry_host.errors import (
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    NotFoundError,
    RequestValidationError,
    SchedulingConflictError,
)
from foundry_host.models.instance import Instance, InstanceStatus, LicenseType
from foundry_host.models.license_pool import LicensePool, pool_id_for
from foundry_host.models.license_reservation import LicenseReservation, ReservationStatus
from foundry_host.models.scheduled_session import OPEN_SESSION_STATUSES, ScheduledSession, SessionStatus
from foundry_host.services import license_pools
from foundry_host.services.auto_shutdown import emergency_shutdown_for_scheduled_session
from foundry_host.services.locks import KeyedLock

ON_DEMAND_LOOKAHEAD = 30 * 60
AVAILABILITY_HORIZON = 7 * 24 * 3600


@dataclass
class LicenseHolders:
    license_id: str
    reservations: List[LicenseReservation] = field(default_factory=list)
    sessions: List[ScheduledSession] = field(default_factory=list)
    instances: List[Instance] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return not (self.reservations or self.sessions or self.instances)

    @property
    def preemptible(self) -> bool:
        return not (self.reservations or self.sessions) and bool(self.instances)

    def to_dict(self) -> Dict:
        return {
            "licenseId": self.license_id,
            "available": self.available,
            "preemptible": self.preemptible,
            "conflictingReservations": len(self.reservations),
            "conflictingSessions": [s.session_id for s in self.sessions],
            "conflictingInstances": [i.user_id for i in self.instances],
        }


@dataclass
class OnDemandVerdict:
    allowed: bool
    reason: Optional[str] = None
    session_id: Optional[str] = None


class LicenseScheduler:
    def __init__(self, store, lifecycle):
        self.store = store
        self.lifecycle = lifecycle
        self._license_locks = KeyedLock()

    # -- sharing -------------------------------------------------------------

    async def set_license_sharing(self, user_id: str, allow: bool, max_concurrent_users: Optional[int] = None) -> Dict:
        instance = await self.store.get(Instance, user_id)
        license_id = pool_id_for(user_id)
        if instance is not None:
            changes = {"allow_license_sharing": bool(allow)}
            if max_concurrent_users:
                changes["max_concurrent_users"] = max_concurrent_users
            instance = await self.store.update(Instance, user_id, changes)

        if allow:
            if instance is not None and instance.license_type != LicenseType.BYOL.value:
                raise InvalidTransitionError("Only BYOL instances can share their license")
            pool = await self.store.get(LicensePool, license_id)
            if pool is None and instance is None:
                raise NotFoundError("An instance is required to share a license")
            await license_pools.ensure_pool(
                self.store,
                user_id,
                instance.sanitized_username if instance is not None else pool.owner_username,
                max_concurrent_users
                or (instance.max_concurrent_users if instance is not None else pool.max_concurrent_users),
            )
        else:
            await license_pools.deactivate_pool(self.store, license_id)

        return {
            "message": (
                "License sharing settings updated"
                if instance is not None
                else "License pool updated (no instance found)"
            ),
            "userId": user_id,
            "licenseId": license_id,
            "allowLicenseSharing": bool(allow),
        }

    # -- availability --------------------------------------------------------

    async def license_holders(self, license_id: str, start: int, end: int, exclude_user_id: Optional[str] = None) -> LicenseHolders:
        reservations = await self.store.active_reservations(license_id, start, end)
        reserved_sessions = {r.session_id for r in reservations}
        sessions = [
            s
            for s in await self.store.sessions_in_range(
                start, end, license_id=license_id, statuses=OPEN_SESSION_STATUSES
            )
            if s.session_id not in reserved_sessions
        ]
        instances = [
            i
            for i in await self.store.scan(
                Instance,
                license_owner_id=license_id,
                status=[InstanceStatus.RUNNING, InstanceStatus.STARTING],
                linked_session_id=None,
            )
            if i.user_id != exclude_user_id
        ]
        return LicenseHolders(license_id, reservations, sessions, instances)

    async def _candidate_licenses(self, license_type: str, requester_id: Optional[str], preferred_license_id: Optional[str]) -> List[str]:
        if license_type == LicenseType.BYOL.value:
            license_id = preferred_license_id or (pool_id_for(requester_id) if requester_id else None)
            if not license_id:
                raise RequestValidationError("A license id or requester is required for BYOL sessions")
            if requester_id and license_id == pool_id_for(requester_id):
                return [license_id]
            pool = await self.store.get(LicensePool, license_id)
            if pool is None or not pool.is_active:
                logging.info("BYOL license %s is not shared; no candidates", license_id)
                return []
            return [license_id]

        pools = [p.license_id for p in await license_pools.active_pools(self.store)]
        ordered = []
        if requester_id and pool_id_for(requester_id) in pools:
            ordered.append(pool_id_for(requester_id))
        if preferred_license_id in pools and preferred_license_id not in ordered:
            ordered.append(preferred_license_id)
        ordered.extend(p for p in pools if p not in ordered)
        return ordered

    async def _ranked_holders(self, license_type, start, end, preferred_license_id, requester_id) -> List[LicenseHolders]:
        """Candidates in selection order: free licences first, then preemptible ones."""
        holders = [
            await self.license_holders(license_id, start, end, exclude_user_id=requester_id)
            for license_id in await self._candidate_licenses(license_type, requester_id, preferred_license_id)
        ]
        return [h for h in holders if h.available] + [h for h in holders if h.preemptible]

    async def check_availability(
        self,
        license_type: str,
        start_time: int,
        end_time: int,
        preferred_license_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> Dict:
        _validate_window(start_time, end_time)
        holders = [
            await self.license_holders(license_id, start_time, end_time, exclude_user_id=requester_id)
            for license_id in await self._candidate_licenses(license_type, requester_id, preferred_license_id)
        ]
        chosen = next((h for h in holders if h.available), None)
        return {
            "available": chosen is not None,
            "licenseId": chosen.license_id if chosen else None,
            "availableLicenses": [h.license_id for h in holders if h.available],
            "preemptibleLicenses": [h.license_id for h in holders if h.preemptible],
            "licenses": [h.to_dict() for h in holders],
        }

    # -- scheduling ----------------------------------------------------------

    async def schedule_session(
        self,
        user_id: str,
        license_type: str,
        start_time: int,
        end_time: int,
        preferred_license_id: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict:
        _validate_window(start_time, end_time)
        if end_time <= self.store.now():
            raise RequestValidationError("Session end time must be in the future")
        license_type = LicenseType(license_type).value

        for candidate in await self._ranked_holders(
            license_type, start_time, end_time, preferred_license_id, user_id
        ):
            async with self._license_locks.hold(candidate.license_id):
                holders = await self.license_holders(
                    candidate.license_id, start_time, end_time, exclude_user_id=user_id
                )
                if not (holders.available or holders.preemptible):
                    continue

                session = ScheduledSession(
                    session_id=str(uuid.uuid4()),
                    user_id=user_id,
                    license_type=license_type,
                    license_id=holders.license_id,
                    start_time=start_time,
                    end_time=end_time,
                    status=SessionStatus.SCHEDULED.value,
                    title=title,
                    description=description,
                )
                reservation = LicenseReservation(
                    reservation_id=str(uuid.uuid4()),
                    license_id=holders.license_id,
                    session_id=session.session_id,
                    user_id=user_id,
                    start_time=start_time,
                    end_time=end_time,
                    status=ReservationStatus.ACTIVE.value,
                )
                try:
                    await self.store.create_session_with_reservation(session, reservation)
                except SchedulingConflictError:
                    logging.info("License %s was taken concurrently; trying next", holders.license_id)
                    continue

                preempted = []
                if holders.instances:
                    preempted = await emergency_shutdown_for_scheduled_session(
                        self.store, self.lifecycle, holders.license_id, exclude_user_id=user_id
                    )
                logging.info(
                    "Scheduled session %s for user %s on %s (preempted: %s)",
                    session.session_id,
                    user_id,
                    holders.license_id,
                    preempted or "none",
                )
                return {
                    "success": True,
                    "message": "Session scheduled successfully",
                    "sessionId": session.session_id,
                    "licenseId": holders.license_id,
                    "conflictsResolved": preempted,
                    "session": session.to_dict(),
                }

        return {
            "success": False,
            "message": "No licenses available for the requested time period",
            "conflictsResolved": [],
        }

    async def _require_session(self, session_id: str) -> ScheduledSession:
        session = await self.store.get(ScheduledSession, session_id)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    async def start_scheduled_session(self, session_id: str) -> Dict:
        session = await self._require_session(session_id)
        async with self._license_locks.hold(session.license_id):
            session = await self._require_session(session_id)
            if session.status != SessionStatus.SCHEDULED.value:
                raise InvalidTransitionError("Session is not in scheduled state")
            if self.store.now() < session.start_time:
                raise InvalidTransitionError("Session start time has not arrived")
            instance = await self.store.get(Instance, session.user_id)
            if instance is None:
                raise NotFoundError("User must register an instance before starting a scheduled session")

            await emergency_shutdown_for_scheduled_session(
                self.store, self.lifecycle, session.license_id, exclude_user_id=session.user_id
            )
            if instance.status != InstanceStatus.STOPPED.value and instance.status != InstanceStatus.CREATED.value:
                logging.info("Stopping instance of user %s before session %s", session.user_id, session_id)
                await self.lifecycle.stop(session.user_id)
            if instance.license_type == LicenseType.POOLED.value:
                await self.lifecycle.borrow_credentials(session.user_id, session.license_id)

            instance = await self.lifecycle.launch(
                session.user_id,
                license_owner_id=session.license_id,
                linked_session_id=session_id,
                session_end_time=session.end_time,
            )
            await self.store.update(
                ScheduledSession,
                session_id,
                {"status": SessionStatus.ACTIVE, "instance_id": session.user_id},
                expected={"status": SessionStatus.SCHEDULED},
            )

        logging.info("Scheduled session %s is active for user %s", session_id, session.user_id)
        return {
            "message": "Scheduled session started",
            "sessionId": session_id,
            "userId": session.user_id,
            "licenseId": session.license_id,
            "status": SessionStatus.ACTIVE.value,
            "url": self.lifecycle.url(instance.sanitized_username),
            "autoShutdownAt": instance.auto_shutdown_at,
        }

    async def end_scheduled_session(self, session_id: str) -> Dict:
        session = await self._require_session(session_id)
        if session.status != SessionStatus.ACTIVE.value:
            raise InvalidTransitionError("Session is not active")
        instance = await self.store.get(Instance, session.user_id)
        if instance is not None and instance.linked_session_id == session_id:
            await self.lifecycle.stop(session.user_id)
        await self.complete_session(session_id)
        return {"message": "Scheduled session ended", "sessionId": session_id, "status": "completed"}

    async def complete_session(self, session_id: str) -> bool:
        """Mark an active session and its reservations completed."""
        try:
            await self.store.update(
                ScheduledSession,
                session_id,
                {"status": SessionStatus.COMPLETED},
                expected={"status": SessionStatus.ACTIVE},
            )
        except (NotFoundError, ConcurrentUpdateError) as exc:
            logging.info("Session %s not completed: %s", session_id, exc)
            return False
        await self._settle_reservations(session_id, ReservationStatus.COMPLETED)
        return True

    async def cancel_session(self, session_id: str, user_id: Optional[str] = None, stop_instance: bool = True) -> Dict:
        session = await self._require_session(session_id)
        if user_id is not None and session.user_id != user_id:
            raise AuthorizationError("You can only cancel your own sessions")
        if session.status == SessionStatus.CANCELLED.value:
            raise InvalidTransitionError("Session already cancelled")
        if session.status == SessionStatus.COMPLETED.value:
            raise InvalidTransitionError("Session already completed")

        if stop_instance and session.status == SessionStatus.ACTIVE.value:
            instance = await self.store.get(Instance, session.user_id)
            if instance is not None and instance.linked_session_id == session_id:
                await self.lifecycle.stop(session.user_id)

        await self.store.update(
            ScheduledSession,
            session_id,
            {"status": SessionStatus.CANCELLED},
            expected={"status": OPEN_SESSION_STATUSES},
        )
        await self._settle_reservations(session_id, ReservationStatus.CANCELLED)
        logging.info("Session %s cancelled", session_id)
        return {"message": "Session cancelled", "sessionId": session_id, "status": "cancelled"}

    async def cancel_user_sessions(self, user_id: str) -> int:
        cancelled = 0
        for session in await self.store.sessions_for_user(user_id):
            if session.status not in OPEN_SESSION_STATUSES:
                continue
            try:
                await self.cancel_session(session.session_id, stop_instance=False)
            except Exception:
                logging.exception("Could not cancel session %s", session.session_id)
                continue
            cancelled += 1
        return cancelled

    async def _settle_reservations(self, session_id: str, status: ReservationStatus) -> None:
        for reservation in await self.store.reservations_for_session(session_id):
            if reservation.status != ReservationStatus.ACTIVE.value:
                continue
            await self.store.update(
                LicenseReservation, reservation.reservation_id, {"status": status}
            )

    async def list_user_sessions(self, user_id: str) -> Dict:
        sessions = await self.store.sessions_for_user(user_id)
        return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}

    async def can_start_on_demand_instance(self, user_id: str) -> OnDemandVerdict:
        instance = await self.store.get(Instance, user_id)
        if instance is None or not instance.license_owner_id:
            return OnDemandVerdict(True)
        now = self.store.now()
        sessions = await self.store.sessions_in_range(
            now,
            now + AVAILABILITY_HORIZON,
            license_id=instance.license_owner_id,
            statuses=OPEN_SESSION_STATUSES,
        )
        for session in sessions:
            if session.status == SessionStatus.ACTIVE.value:
                # an active session whose instance was stopped no longer holds the licence
                if not await self.store.scan(
                    Instance,
                    linked_session_id=session.session_id,
                    status=[InstanceStatus.RUNNING, InstanceStatus.STARTING],
                ):
                    continue
                return OnDemandVerdict(
                    False, "A scheduled session is currently using this license", session.session_id
                )
            if session.start_time <= now + ON_DEMAND_LOOKAHEAD:
                return OnDemandVerdict(
                    False, "A scheduled session is about to start using this license", session.session_id
                )
        return OnDemandVerdict(True)


def _validate_window(start_time, end_time) -> None:
    if start_time is None or end_time is None:
        raise RequestValidationError("Missing required fields: startTime, endTime")
    if end_time <= start_time:
        raise RequestValidationError("End time must be after start time")
