"""Create, reactivate and deactivate :class:`LicensePool` rows."""

import logging
from typing import Optional

from foundry_host.models.license_pool import LicensePool, pool_id_for


async def ensure_pool(store, owner_id: str, owner_username: Optional[str], max_concurrent_users: int = 1):
    """Reactivate the owner's pool, or create it on first share."""
    license_id = pool_id_for(owner_id)
    pool = await store.get(LicensePool, license_id)
    if pool is not None:
        pool = await store.update(
            LicensePool,
            license_id,
            {
                "is_active": True,
                "max_concurrent_users": max_concurrent_users,
                "owner_username": owner_username or pool.owner_username,
            },
        )
        logging.info("Reactivated license pool %s", license_id)
        return pool

    pool = await store.create(
        LicensePool(
            license_id=license_id,
            owner_id=owner_id,
            owner_username=owner_username,
            max_concurrent_users=max_concurrent_users,
            is_active=True,
        )
    )
    logging.info("Created license pool %s", license_id)
    return pool


async def deactivate_pool(store, license_id: str) -> bool:
    pool = await store.get(LicensePool, license_id)
    if pool is None:
        return False
    if pool.is_active:
        await store.update(LicensePool, license_id, {"is_active": False})
        logging.info("Deactivated license pool %s", license_id)
    return True


async def active_pools(store):
    pools = await store.scan(LicensePool, is_active=True)
    return sorted(pools, key=lambda pool: pool.license_id)
