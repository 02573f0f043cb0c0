import logging
from typing import Iterable

from botocore.exceptions import ClientError

from foundry_host.provisioners.aws.client import call, error_code, make_client, tags

FOUNDRY_PORT = 30000
FIRST_PRIORITY = 100
PRIORITY_STEP = 10


class AlbLoadBalancer:
    def __init__(self, settings, client=None):
        settings.require("vpc_id", "https_listener_arn")
        self.settings = settings
        self._client = client or make_client("elbv2", settings)

    async def create_target_group(self, sanitized_username: str) -> str:
        name = f"foundry-{sanitized_username}"
        response = await call(
            self._client,
            "create_target_group",
            Name=name,
            Protocol="HTTP",
            Port=FOUNDRY_PORT,
            VpcId=self.settings.vpc_id,
            TargetType="ip",
            HealthCheckPath="/",
            HealthCheckPort=str(FOUNDRY_PORT),
            HealthCheckProtocol="HTTP",
            HealthCheckIntervalSeconds=30,
            HealthCheckTimeoutSeconds=10,
            HealthyThresholdCount=2,
            UnhealthyThresholdCount=3,
            Matcher={"HttpCode": "200,302"},
            Tags=tags(Name=name, SanitizedUsername=sanitized_username, Application="FoundryVTT"),
        )
        arn = response["TargetGroups"][0]["TargetGroupArn"]
        logging.info("Created target group %s", name)
        return arn

    async def delete_target_group(self, target_group_arn: str) -> None:
        try:
            await call(self._client, "delete_target_group", TargetGroupArn=target_group_arn)
        except ClientError as exc:
            if error_code(exc) != "TargetGroupNotFound":
                raise
            logging.info("Target group %s already absent", target_group_arn)

    async def register_target(self, target_group_arn: str, address: str) -> None:
        await call(
            self._client,
            "register_targets",
            TargetGroupArn=target_group_arn,
            Targets=[{"Id": address, "Port": FOUNDRY_PORT}],
        )

    async def deregister_target(self, target_group_arn: str, address: str) -> None:
        try:
            await call(
                self._client,
                "deregister_targets",
                TargetGroupArn=target_group_arn,
                Targets=[{"Id": address, "Port": FOUNDRY_PORT}],
            )
        except ClientError as exc:
            if error_code(exc) not in ("TargetGroupNotFound", "InvalidTarget"):
                raise

    async def create_rule(self, hostname: str, target_group_arn: str, priority: int) -> str:
        response = await call(
            self._client,
            "create_rule",
            ListenerArn=self.settings.https_listener_arn,
            Priority=priority,
            Conditions=[{"Field": "host-header", "Values": [hostname]}],
            Actions=[{"Type": "forward", "TargetGroupArn": target_group_arn}],
            Tags=tags(Hostname=hostname),
        )
        return response["Rules"][0]["RuleArn"]

    async def delete_rule(self, rule_arn: str) -> None:
        try:
            await call(self._client, "delete_rule", RuleArn=rule_arn)
        except ClientError as exc:
            if error_code(exc) != "RuleNotFound":
                raise

    async def next_free_priority(self, reserved: Iterable[int] = ()) -> int:
        used = set(reserved)
        params = {"ListenerArn": self.settings.https_listener_arn}
        while True:
            response = await call(self._client, "describe_rules", **params)
            used.update(
                int(rule["Priority"])
                for rule in response.get("Rules", [])
                if rule.get("Priority") not in (None, "default")
            )
            if not response.get("NextMarker"):
                break
            params["Marker"] = response["NextMarker"]
        priority = FIRST_PRIORITY
        while priority in used:
            priority += PRIORITY_STEP
        return priority
