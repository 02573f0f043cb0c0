"""Capabilities the orchestration engine needs from the outside world.

Each protocol is a narrow facade over one external service.  Deleting or
stopping something that no longer exists is a no-op, never an error.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Tuple


@dataclass
class Credentials:
    username: str
    password: str
    admin_key: Optional[str] = None

    def to_secret(self) -> dict:
        return {
            "username": self.username,
            "password": self.password,
            "admin_key": self.admin_key or "",
        }

    @classmethod
    def from_secret(cls, data: dict) -> "Credentials":
        return cls(
            username=data.get("username", ""),
            password=data.get("password", ""),
            admin_key=data.get("admin_key") or None,
        )


@dataclass
class AccessKey:
    access_key_id: str
    secret_access_key: str


@dataclass
class TaskSpec:
    user_id: str
    sanitized_username: str
    access_point_id: str
    secret_arn: str
    foundry_version: str = "13"
    bucket_name: Optional[str] = None
    access_key: Optional[AccessKey] = None


class ComputeProvisioner(Protocol):
    async def register_task_definition(self, spec: TaskSpec) -> str: ...

    async def run_task(self, task_definition_arn: str) -> str: ...

    async def stop_task(self, task_arn: str, reason: str = "User requested stop") -> None: ...

    async def get_task_status(self, task_arn: str) -> Optional[str]: ...

    async def wait_until_ready(self, task_arn: str, *, timeout: float, interval: float) -> str: ...


class LoadBalancerProvisioner(Protocol):
    async def create_target_group(self, sanitized_username: str) -> str: ...

    async def delete_target_group(self, target_group_arn: str) -> None: ...

    async def register_target(self, target_group_arn: str, address: str) -> None: ...

    async def deregister_target(self, target_group_arn: str, address: str) -> None: ...

    async def create_rule(self, hostname: str, target_group_arn: str, priority: int) -> str: ...

    async def delete_rule(self, rule_arn: str) -> None: ...

    async def next_free_priority(self, reserved: Iterable[int] = ()) -> int: ...


class DnsRegistrar(Protocol):
    async def upsert_record(self, hostname: str) -> None: ...

    async def delete_record(self, hostname: str) -> None: ...


class FilesystemProvisioner(Protocol):
    async def create_access_point(self, user_id: str) -> str: ...

    async def delete_access_point(self, access_point_id: str) -> None: ...

    async def run_cleanup(self, user_id: str) -> None: ...

    async def reset_ownership(self, user_id: str, uid: int, gid: int) -> None: ...


class ObjectStorageProvisioner(Protocol):
    async def create_bucket(self, bucket_name: str) -> None: ...

    async def delete_bucket(self, bucket_name: str) -> None: ...

    def public_url(self, bucket_name: str) -> str: ...


class IdentityProvisioner(Protocol):
    async def create_principal(self, user_name: str, user_id: str, bucket_name: str) -> AccessKey: ...

    async def delete_principal(self, user_name: str) -> None: ...


class SecretVault(Protocol):
    async def store(self, user_id: str, credentials: Credentials) -> str: ...

    async def get(self, user_id: str) -> Optional[Credentials]: ...

    async def delete(self, user_id: str) -> None: ...


@dataclass
class Provisioners:
    compute: ComputeProvisioner
    load_balancer: LoadBalancerProvisioner
    dns: DnsRegistrar
    filesystem: FilesystemProvisioner
    storage: ObjectStorageProvisioner
    identity: IdentityProvisioner
    vault: SecretVault


def uid_gid_for_version(foundry_version: str) -> Tuple[int, int]:
    """Container user for a Foundry release: v11 and v12 images run as 421."""
    if foundry_version.startswith("11") or foundry_version.startswith("12"):
        return 421, 421
    return 1000, 1000
