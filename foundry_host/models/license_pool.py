from sqlalchemy import Boolean, Column, Integer, String

from foundry_host.db.base_class import Base, SerializerMixin


def pool_id_for(owner_id: str) -> str:
    return f"byol-{owner_id}"


class LicensePool(SerializerMixin, Base):
    __tablename__ = "license_pools"
    __hidden__ = ("version",)

    license_id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, unique=True, index=True)
    owner_username = Column(String, nullable=True)
    max_concurrent_users = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
