"""Runtime settings read from the environment (and ``.env`` when present)."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from foundry_host.errors import ConfigurationError

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    aws_region: str = "us-east-1"
    cluster_name: Optional[str] = None
    file_system_id: Optional[str] = None
    https_listener_arn: Optional[str] = None
    alb_dns_name: Optional[str] = None
    alb_zone_id: Optional[str] = None
    vpc_id: Optional[str] = None
    hosted_zone_id: Optional[str] = None
    domain_name: str = "localhost"
    private_subnet_ids: List[str] = field(default_factory=list)
    task_security_group_id: Optional[str] = None
    execution_role_arn: Optional[str] = None
    task_role_arn: Optional[str] = None
    task_ready_timeout: int = 300
    task_poll_interval: int = 5
    sweep_interval: int = 60

    def require(self, *names: str) -> None:
        """Raise :class:`ConfigurationError` listing every unset attribute."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                "Missing configuration: " + ", ".join(sorted(missing))
            )


def load_settings() -> Settings:
    subnets = os.getenv("PRIVATE_SUBNET_IDS", "")
    return Settings(
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        cluster_name=os.getenv("CLUSTER_NAME"),
        file_system_id=os.getenv("FILE_SYSTEM_ID"),
        https_listener_arn=os.getenv("ALB_HTTPS_LISTENER_ARN"),
        alb_dns_name=os.getenv("ALB_DNS_NAME"),
        alb_zone_id=os.getenv("ALB_ZONE_ID"),
        vpc_id=os.getenv("VPC_ID"),
        hosted_zone_id=os.getenv("ROUTE53_HOSTED_ZONE_ID"),
        domain_name=os.getenv("DOMAIN_NAME", "localhost"),
        private_subnet_ids=[s.strip() for s in subnets.split(",") if s.strip()],
        task_security_group_id=os.getenv("TASK_SECURITY_GROUP_ID"),
        execution_role_arn=os.getenv("EXECUTION_ROLE_ARN"),
        task_role_arn=os.getenv("TASK_ROLE_ARN"),
        task_ready_timeout=_int_env("TASK_READY_TIMEOUT_SECONDS", 300),
        task_poll_interval=_int_env("TASK_POLL_INTERVAL_SECONDS", 5),
        sweep_interval=_int_env("SWEEP_INTERVAL_SECONDS", 60),
    )
