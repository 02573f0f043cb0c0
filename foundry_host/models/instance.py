import enum

from sqlalchemy import Boolean, Column, Integer, String

from foundry_host.db.base_class import Base, SerializerMixin


class InstanceStatus(str, enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class LicenseType(str, enum.Enum):
    BYOL = "byol"
    POOLED = "pooled"


class Instance(SerializerMixin, Base):
    __tablename__ = "instances"
    __hidden__ = ("s3_access_key_id", "s3_secret_access_key", "version")

    user_id = Column(String, primary_key=True)
    sanitized_username = Column(String, nullable=False)
    status = Column(String, nullable=False, default=InstanceStatus.CREATED.value, index=True)
    license_type = Column(String, nullable=False, default=LicenseType.BYOL.value)
    license_owner_id = Column(String, nullable=True, index=True)
    allow_license_sharing = Column(Boolean, nullable=False, default=False)
    max_concurrent_users = Column(Integer, nullable=False, default=1)
    linked_session_id = Column(String, nullable=True)
    foundry_version = Column(String, nullable=False, default="13")

    started_at = Column(Integer, nullable=True)
    auto_shutdown_at = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    access_point_id = Column(String, nullable=True)
    secret_arn = Column(String, nullable=True)
    s3_bucket_name = Column(String, nullable=True)
    s3_bucket_url = Column(String, nullable=True)
    iam_user_name = Column(String, nullable=True)
    s3_access_key_id = Column(String, nullable=True)
    s3_secret_access_key = Column(String, nullable=True)
    target_group_arn = Column(String, nullable=True)
    alb_rule_priority = Column(Integer, nullable=True)
    alb_rule_arn = Column(String, nullable=True)
    task_definition_arn = Column(String, nullable=True)
    task_arn = Column(String, nullable=True)
    task_private_ip = Column(String, nullable=True)
