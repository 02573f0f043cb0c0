"""Persistence layer over the async SQLAlchemy session factory.

Every write goes through :class:`Store` so that ``version`` and ``updated_at``
are maintained in one place.  ``update`` is a partial update: keys mapped to
``None`` clear the column.  Passing ``expected`` turns it into a conditional
write which fails with :class:`ConcurrentUpdateError` when the row no longer
matches.
"""

import enum
import logging
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional

from sqlalchemy import and_, inspect, select, update as sa_update
from sqlalchemy.exc import IntegrityError

from foundry_host.errors import ConcurrentUpdateError, NotFoundError, SchedulingConflictError
from foundry_host.models.license_pool import LicensePool
from foundry_host.models.license_reservation import LicenseReservation, ReservationStatus
from foundry_host.models.scheduled_session import ScheduledSession


def _plain(value):
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _primary_key(model):
    return inspect(model).primary_key[0]


def _criteria(model, expected: Mapping[str, Any]):
    clauses = []
    for field, value in expected.items():
        column = getattr(model, field)
        if isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(column.in_([_plain(v) for v in value]))
        elif value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == _plain(value))
    return clauses


class Store:
    def __init__(self, session_factory, clock: Callable[[], float] = time.time):
        self._session_factory = session_factory
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    async def get(self, model, key):
        async with self._session_factory() as db:
            return await db.get(model, key)

    async def create(self, obj):
        now = self.now()
        if getattr(obj, "created_at", None) is None:
            obj.created_at = now
        obj.updated_at = now
        obj.version = 1
        async with self._session_factory() as db:
            db.add(obj)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ConcurrentUpdateError(
                    f"{type(obj).__name__} already exists"
                ) from exc
            await db.refresh(obj)
        return obj

    async def update(self, model, key, values: Mapping[str, Any], expected: Optional[Mapping[str, Any]] = None):
        pk = _primary_key(model)
        changes = {field: _plain(value) for field, value in values.items()}
        changes["version"] = model.version + 1
        changes["updated_at"] = self.now()

        stmt = sa_update(model).where(pk == key, *_criteria(model, expected or {}))
        stmt = stmt.values(**changes).execution_options(synchronize_session=False)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount == 0:
                await db.rollback()
                current = await db.get(model, key)
                if current is None:
                    raise NotFoundError(f"{model.__name__} {key} not found")
                raise ConcurrentUpdateError(
                    f"{model.__name__} {key} was modified concurrently"
                )
            await db.commit()
            return await db.get(model, key, populate_existing=True)

    async def delete(self, model, key) -> bool:
        async with self._session_factory() as db:
            obj = await db.get(model, key)
            if obj is None:
                return False
            await db.delete(obj)
            await db.commit()
            return True

    async def scan(self, model, **criteria) -> List[Any]:
        stmt = select(model)
        clauses = _criteria(model, criteria)
        if clauses:
            stmt = stmt.where(*clauses)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def sessions_for_user(self, user_id: str) -> List[ScheduledSession]:
        stmt = (
            select(ScheduledSession)
            .where(ScheduledSession.user_id == user_id)
            .order_by(ScheduledSession.start_time)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def sessions_in_range(
        self,
        start: int,
        end: int,
        license_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[ScheduledSession]:
        """Sessions whose ``[start_time, end_time)`` overlaps ``[start, end)``."""
        stmt = select(ScheduledSession).where(
            ScheduledSession.start_time < end, ScheduledSession.end_time > start
        )
        if license_id is not None:
            stmt = stmt.where(ScheduledSession.license_id == license_id)
        if statuses is not None:
            stmt = stmt.where(ScheduledSession.status.in_([_plain(s) for s in statuses]))
        stmt = stmt.order_by(ScheduledSession.start_time)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def active_reservations(self, license_id: str, start: int, end: int) -> List[LicenseReservation]:
        stmt = select(LicenseReservation).where(
            *self._overlapping_reservation(license_id, start, end)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def all_active_reservations(self) -> List[LicenseReservation]:
        return await self.scan(LicenseReservation, status=ReservationStatus.ACTIVE)

    async def reservations_for_session(self, session_id: str) -> List[LicenseReservation]:
        return await self.scan(LicenseReservation, session_id=session_id)

    async def create_session_with_reservation(
        self, session: ScheduledSession, reservation: LicenseReservation
    ) -> ScheduledSession:
        """Insert a session and its reservation unless the window is already held.

        The pool row is bumped first so the transaction holds a write lock on
        it; on SQLite this serialises writers for the whole database, elsewhere
        the row lock serialises writers for the licence.
        """
        now = self.now()
        for obj in (session, reservation):
            obj.created_at = now
            obj.updated_at = now
            obj.version = 1

        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(
                    sa_update(LicensePool)
                    .where(LicensePool.license_id == reservation.license_id)
                    .values(version=LicensePool.version + 1)
                    .execution_options(synchronize_session=False)
                )
                clash = await db.execute(
                    select(LicenseReservation.reservation_id)
                    .where(
                        *self._overlapping_reservation(
                            reservation.license_id,
                            reservation.start_time,
                            reservation.end_time,
                        )
                    )
                    .limit(1)
                    .with_for_update()
                )
                if clash.first() is not None:
                    raise SchedulingConflictError(
                        f"License {reservation.license_id} is already reserved for that time"
                    )
                db.add_all([session, reservation])
        logging.info(
            "Reserved license %s for session %s (%s-%s)",
            reservation.license_id,
            session.session_id,
            reservation.start_time,
            reservation.end_time,
        )
        return session

    @staticmethod
    def _overlapping_reservation(license_id: str, start: int, end: int):
        return (
            and_(
                LicenseReservation.license_id == license_id,
                LicenseReservation.status == ReservationStatus.ACTIVE.value,
            ),
            LicenseReservation.start_time < end,
            LicenseReservation.end_time > start,
        )
