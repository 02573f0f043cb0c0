import enum

from sqlalchemy import Boolean, Column, Integer, String, Text

from foundry_host.db.base_class import Base, SerializerMixin


class NotificationType(str, enum.Enum):
    SESSION_READY = "session-ready"
    SESSION_FAILED = "session-failed"
    INSTANCE_SHUTDOWN = "instance-shutdown"


class Notification(SerializerMixin, Base):
    __tablename__ = "notifications"
    __hidden__ = ("version",)

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_type = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    instance_url = Column(String, nullable=True)
    delivered = Column(Boolean, nullable=False, default=False)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
