import enum

from sqlalchemy import Column, Index, Integer, String

from foundry_host.db.base_class import Base, SerializerMixin


class ReservationStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LicenseReservation(SerializerMixin, Base):
    __tablename__ = "license_reservations"
    __hidden__ = ("version",)
    __table_args__ = (
        Index("ix_license_reservations_license_window", "license_id", "start_time"),
    )

    reservation_id = Column(String, primary_key=True)
    license_id = Column(String, nullable=False)
    session_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    start_time = Column(Integer, nullable=False)
    end_time = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=ReservationStatus.ACTIVE.value)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
