import enum

from sqlalchemy import Column, Integer, String, Text

from foundry_host.db.base_class import Base, SerializerMixin


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_SESSION_STATUSES = (SessionStatus.SCHEDULED.value, SessionStatus.ACTIVE.value)


class ScheduledSession(SerializerMixin, Base):
    __tablename__ = "scheduled_sessions"
    __hidden__ = ("version",)

    session_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    license_type = Column(String, nullable=False)
    license_id = Column(String, nullable=False, index=True)
    start_time = Column(Integer, nullable=False, index=True)
    end_time = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=SessionStatus.SCHEDULED.value, index=True)
    instance_id = Column(String, nullable=True)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
