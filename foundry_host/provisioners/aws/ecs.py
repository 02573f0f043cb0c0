"""Fargate tasks: the per-user Foundry server and one-off EFS maintenance jobs."""

import json
import logging
from typing import Optional

from botocore.exceptions import ClientError

from foundry_host.errors import ProvisioningError
from foundry_host.provisioners.aws.client import call, error_code, make_client
from foundry_host.provisioners.base import TaskSpec
from foundry_host.services.polling import poll_until

FOUNDRY_PORT = 30000
JOB_TIMEOUT = 300
JOB_POLL_INTERVAL = 10

STATUS_MAP = {
    "pending": "starting",
    "provisioning": "starting",
    "activating": "starting",
    "running": "running",
    "stopping": "stopping",
    "deprovisioning": "stopping",
    "deactivating": "stopping",
    "stopped": "stopped",
}

_JOB_SCRIPT = (
    'if [ -d "/efs/foundry-instances/$USER_ID" ]; then {action}; '
    "else echo 'Nothing to do for' $USER_ID; fi"
)


class EcsCompute:
    def __init__(self, settings, client=None):
        settings.require(
            "cluster_name",
            "file_system_id",
            "execution_role_arn",
            "task_role_arn",
            "task_security_group_id",
            "private_subnet_ids",
        )
        self.settings = settings
        self._client = client or make_client("ecs", settings)

    def _log_config(self, group: str, prefix: str):
        return {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": group,
                "awslogs-region": self.settings.aws_region,
                "awslogs-stream-prefix": prefix,
                "awslogs-create-group": "true",
            },
        }

    def _base_definition(self, family: str, cpu: str, memory: str):
        return {
            "family": family,
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "cpu": cpu,
            "memory": memory,
            "executionRoleArn": self.settings.execution_role_arn,
            "taskRoleArn": self.settings.task_role_arn,
            "runtimePlatform": {"cpuArchitecture": "ARM64", "operatingSystemFamily": "LINUX"},
        }

    def foundry_task_definition(self, spec: TaskSpec) -> dict:
        hostname = f"{spec.sanitized_username}.{self.settings.domain_name}"
        containers = []
        environment = [
            {"name": "CONTAINER_PRESERVE_CONFIG", "value": "true"},
            {"name": "FOUNDRY_HOSTNAME", "value": hostname},
            {"name": "FOUNDRY_LOCAL_HOSTNAME", "value": f"foundry-{spec.sanitized_username}"},
            {"name": "FOUNDRY_PROXY_SSL", "value": "true"},
            {"name": "FOUNDRY_IP_DISCOVERY", "value": "false"},
            {"name": "FOUNDRY_TELEMETRY", "value": "false"},
            {"name": "FOUNDRY_MINIFY_STATIC_FILES", "value": "true"},
            {"name": "FOUNDRY_COMPRESS_WEBSOCKET", "value": "true"},
        ]
        foundry = {
            "name": "foundry",
            "image": f"felddy/foundryvtt:{spec.foundry_version}",
            "essential": True,
            "portMappings": [{"containerPort": FOUNDRY_PORT, "protocol": "tcp"}],
            "logConfiguration": self._log_config(f"/aws/ecs/foundry-{spec.user_id}", "foundry"),
            "environment": environment,
            "secrets": [
                {"name": "FOUNDRY_USERNAME", "valueFrom": f"{spec.secret_arn}:username::"},
                {"name": "FOUNDRY_PASSWORD", "valueFrom": f"{spec.secret_arn}:password::"},
                {"name": "FOUNDRY_ADMIN_KEY", "valueFrom": f"{spec.secret_arn}:admin_key::"},
            ],
            "mountPoints": [
                {"sourceVolume": "foundry-data", "containerPath": "/data", "readOnly": False}
            ],
        }
        if spec.bucket_name and spec.access_key:
            aws_config = json.dumps(
                {
                    "buckets": [spec.bucket_name],
                    "region": self.settings.aws_region,
                    "credentials": {
                        "accessKeyId": spec.access_key.access_key_id,
                        "secretAccessKey": spec.access_key.secret_access_key,
                    },
                }
            )
            containers.append(
                {
                    "name": "aws-config-creator",
                    "image": "alpine:latest",
                    "essential": False,
                    "command": ["sh", "-c", f"echo '{aws_config}' > /data/awsConfig.json"],
                    "mountPoints": [{"sourceVolume": "foundry-data", "containerPath": "/data"}],
                    "logConfiguration": self._log_config(f"/ecs/foundry-{spec.user_id}", "aws-config"),
                }
            )
            foundry["dependsOn"] = [{"containerName": "aws-config-creator", "condition": "SUCCESS"}]
            environment.append({"name": "FOUNDRY_AWS_CONFIG", "value": "/data/awsConfig.json"})
        containers.append(foundry)

        definition = self._base_definition(f"foundry-{spec.user_id}", "1024", "2048")
        definition["containerDefinitions"] = containers
        definition["volumes"] = [
            {
                "name": "foundry-data",
                "efsVolumeConfiguration": {
                    "fileSystemId": self.settings.file_system_id,
                    "transitEncryption": "ENABLED",
                    "authorizationConfig": {"accessPointId": spec.access_point_id},
                },
            }
        ]
        return definition

    def job_task_definition(self, family: str, container: str, action: str) -> dict:
        definition = self._base_definition(family, "256", "512")
        definition["containerDefinitions"] = [
            {
                "name": container,
                "image": "alpine:latest",
                "essential": True,
                "command": ["sh", "-c", _JOB_SCRIPT.format(action=action)],
                "logConfiguration": self._log_config(f"/aws/ecs/{family}", container),
                "mountPoints": [{"sourceVolume": "efs-root", "containerPath": "/efs", "readOnly": False}],
            }
        ]
        definition["volumes"] = [
            {
                "name": "efs-root",
                "efsVolumeConfiguration": {
                    "fileSystemId": self.settings.file_system_id,
                    "rootDirectory": "/",
                    "transitEncryption": "ENABLED",
                },
            }
        ]
        return definition

    async def _register(self, definition: dict) -> str:
        response = await call(self._client, "register_task_definition", **definition)
        arn = response["taskDefinition"]["taskDefinitionArn"]
        logging.info("Registered task definition %s", arn)
        return arn

    async def register_task_definition(self, spec: TaskSpec) -> str:
        return await self._register(self.foundry_task_definition(spec))

    async def run_task(self, task_definition_arn: str, overrides: Optional[dict] = None) -> str:
        params = {
            "cluster": self.settings.cluster_name,
            "taskDefinition": task_definition_arn,
            "launchType": "FARGATE",
            "count": 1,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": self.settings.private_subnet_ids,
                    "securityGroups": [self.settings.task_security_group_id],
                    "assignPublicIp": "DISABLED",
                }
            },
        }
        if overrides:
            params["overrides"] = overrides
        response = await call(self._client, "run_task", **params)
        if response.get("failures"):
            raise ProvisioningError(
                "run_task", [], RuntimeError(f"Failed to start task: {response['failures']}")
            )
        return response["tasks"][0]["taskArn"]

    async def stop_task(self, task_arn: str, reason: str = "User requested stop") -> None:
        try:
            await call(
                self._client, "stop_task", cluster=self.settings.cluster_name, task=task_arn, reason=reason
            )
        except ClientError as exc:
            if error_code(exc) != "InvalidParameterException":
                raise
            logging.info("Task %s already gone", task_arn)

    async def _describe(self, task_arn: str) -> Optional[dict]:
        response = await call(
            self._client, "describe_tasks", cluster=self.settings.cluster_name, tasks=[task_arn]
        )
        tasks = response.get("tasks") or []
        return tasks[0] if tasks else None

    async def get_task_status(self, task_arn: str) -> Optional[str]:
        task = await self._describe(task_arn)
        if task is None:
            return None
        return STATUS_MAP.get((task.get("lastStatus") or "").lower(), "unknown")

    async def wait_until_ready(self, task_arn: str, *, timeout: float, interval: float) -> str:
        async def probe():
            task = await self._describe(task_arn)
            if task is None:
                raise ProvisioningError("wait_for_task", [], RuntimeError(f"Task {task_arn} not found"))
            status = task.get("lastStatus")
            if status == "STOPPED":
                raise ProvisioningError(
                    "wait_for_task",
                    [],
                    RuntimeError(f"Task stopped: {task.get('stoppedReason', 'unknown reason')}"),
                )
            if status != "RUNNING":
                return None
            for attachment in task.get("attachments", []):
                for detail in attachment.get("details", []):
                    if detail.get("name") == "privateIPv4Address":
                        return detail["value"]
            return None

        return await poll_until(
            probe, interval=interval, timeout=timeout, description=f"task {task_arn}"
        )

    async def run_job(self, family: str, container: str, action: str, user_id: str) -> None:
        """Run a one-off EFS job for ``user_id`` and wait for a zero exit code."""
        task_definition_arn = await self._register(self.job_task_definition(family, container, action))
        task_arn = await self.run_task(
            task_definition_arn,
            overrides={
                "containerOverrides": [
                    {"name": container, "environment": [{"name": "USER_ID", "value": user_id}]}
                ]
            },
        )

        async def finished():
            task = await self._describe(task_arn)
            if task is None or task.get("lastStatus") != "STOPPED":
                return None
            exit_code = (task.get("containers") or [{}])[0].get("exitCode")
            if exit_code != 0:
                raise ProvisioningError(
                    family, [], RuntimeError(f"Job exited with code {exit_code}")
                )
            return True

        await poll_until(
            finished, interval=JOB_POLL_INTERVAL, timeout=JOB_TIMEOUT, description=f"{family} job"
        )
        logging.info("Job %s finished for user %s", family, user_id)
