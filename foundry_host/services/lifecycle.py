"""Per-user instance lifecycle: create, start, stop, destroy.

Status changes follow ``TRANSITIONS`` and are persisted with conditional
writes on the prior status, so a second writer racing on the same row fails
instead of silently overwriting.  Calls for one user are additionally
serialised in-process through a :class:`KeyedLock`.
"""

import logging
import re
import secrets
from typing import Dict, List, Optional, Tuple

from foundry_host.errors import (
    InvalidTransitionError,
    LicenseUnavailableError,
    NotFoundError,
    OrchestratorError,
    ProvisioningError,
    RequestValidationError,
)
from foundry_host.models.instance import Instance, InstanceStatus, LicenseType
from foundry_host.models.license_pool import pool_id_for
from foundry_host.models.scheduled_session import SessionStatus
from foundry_host.provisioners.base import (
    AccessKey,
    Credentials,
    Provisioners,
    TaskSpec,
    uid_gid_for_version,
)
from foundry_host.services import license_pools
from foundry_host.services.auto_shutdown import calculate_auto_shutdown_time
from foundry_host.services.locks import KeyedLock

POOLED_PLACEHOLDER = "POOLED_DYNAMIC"
DEFAULT_FOUNDRY_VERSION = "13"
NAMED_VERSIONS = {"13", "12", "11", "release", "latest"}
VERSION_PATTERN = re.compile(r"^\d+\.\d+(\.\d+)?$")
LICENSE_ID_PATTERN = re.compile(r"^byol-(.+)$")

TRANSITIONS = {
    InstanceStatus.CREATED: {InstanceStatus.STARTING},
    InstanceStatus.STOPPED: {InstanceStatus.STARTING},
    InstanceStatus.STARTING: {InstanceStatus.RUNNING, InstanceStatus.STOPPING, InstanceStatus.STOPPED},
    InstanceStatus.RUNNING: {InstanceStatus.STOPPING},
    InstanceStatus.STOPPING: {InstanceStatus.STOPPED, InstanceStatus.STOPPING},
}

TRANSIENT_FIELDS = (
    "task_arn",
    "task_private_ip",
    "alb_rule_arn",
    "auto_shutdown_at",
    "started_at",
    "linked_session_id",
)


def assert_transition(current, target) -> None:
    current = InstanceStatus(current)
    target = InstanceStatus(target)
    if target not in TRANSITIONS.get(current, set()):
        if current == InstanceStatus.RUNNING and target == InstanceStatus.STARTING:
            raise InvalidTransitionError("Instance is already running")
        if current == InstanceStatus.STARTING and target == InstanceStatus.STARTING:
            raise InvalidTransitionError("Instance is already starting")
        raise InvalidTransitionError(
            f"Cannot move instance from {current.value} to {target.value}"
        )


def validate_version(foundry_version: str) -> str:
    if foundry_version in NAMED_VERSIONS or VERSION_PATTERN.match(foundry_version or ""):
        return foundry_version
    raise RequestValidationError(
        f"Invalid Foundry version: {foundry_version}. "
        "Use 13, 12, 11, release, latest or an explicit version such as 13.345"
    )


class InstanceLifecycleManager:
    def __init__(self, store, provisioners: Provisioners, settings):
        self.store = store
        self.provisioners = provisioners
        self.settings = settings
        self.scheduler = None
        self._user_locks = KeyedLock()

    def hostname(self, sanitized_username: str) -> str:
        return f"{sanitized_username}.{self.settings.domain_name}"

    def url(self, sanitized_username: str) -> str:
        return f"https://{self.hostname(sanitized_username)}"

    async def _require(self, user_id: str) -> Instance:
        instance = await self.store.get(Instance, user_id)
        if instance is None:
            raise NotFoundError("Instance not found")
        return instance

    # -- create --------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        sanitized_username: Optional[str],
        license_type: str = LicenseType.BYOL.value,
        foundry_username: Optional[str] = None,
        foundry_password: Optional[str] = None,
        allow_license_sharing: bool = False,
        max_concurrent_users: int = 1,
        selected_license_id: Optional[str] = None,
    ) -> Dict:
        async with self._user_locks.hold(user_id):
            if await self.store.get(Instance, user_id) is not None:
                raise InvalidTransitionError("User already has an instance")
            try:
                license_type = LicenseType(license_type or LicenseType.BYOL.value)
            except ValueError:
                raise RequestValidationError("Invalid license type") from None
            if not sanitized_username:
                raise RequestValidationError("Missing sanitized username")

            existing_secret = await self.provisioners.vault.get(user_id)
            credentials, license_owner_id = await self._resolve_credentials(
                user_id,
                license_type,
                foundry_username,
                foundry_password,
                selected_license_id,
                existing_secret,
            )
            credentials.admin_key = (
                existing_secret.admin_key
                if existing_secret is not None and existing_secret.admin_key
                else secrets.token_hex(16)
            )
            logging.info(
                "Creating %s instance for user %s (%s)",
                license_type.value,
                user_id,
                sanitized_username,
            )
            return await self._provision(
                user_id,
                sanitized_username,
                license_type,
                credentials,
                license_owner_id,
                allow_license_sharing,
                max_concurrent_users,
            )

    async def _resolve_credentials(
        self,
        user_id,
        license_type,
        foundry_username,
        foundry_password,
        selected_license_id,
        existing_secret,
    ) -> Tuple[Credentials, Optional[str]]:
        if license_type == LicenseType.POOLED:
            if not selected_license_id:
                return Credentials(POOLED_PLACEHOLDER, POOLED_PLACEHOLDER), None
            owner_credentials = await self.owner_credentials(selected_license_id)
            return (
                Credentials(owner_credentials.username, owner_credentials.password),
                selected_license_id,
            )

        if foundry_username and foundry_password:
            return Credentials(foundry_username, foundry_password), pool_id_for(user_id)
        if existing_secret is not None and existing_secret.username not in ("", POOLED_PLACEHOLDER):
            logging.info("Reusing vaulted credentials for user %s", user_id)
            return (
                Credentials(existing_secret.username, existing_secret.password),
                pool_id_for(user_id),
            )
        raise RequestValidationError("Missing Foundry credentials for BYOL license")

    async def owner_credentials(self, license_id: str) -> Credentials:
        """Credentials of the user who owns ``license_id``.

        A pool whose owner's secret has gone is deactivated so that it stops
        being offered to borrowers.
        """
        match = LICENSE_ID_PATTERN.match(license_id or "")
        if not match:
            raise RequestValidationError("Invalid license ID format")
        owner_id = match.group(1)
        credentials = await self.provisioners.vault.get(owner_id)
        if credentials is None:
            await license_pools.deactivate_pool(self.store, license_id)
            raise LicenseUnavailableError(
                f"License owner credentials not found for {license_id}. "
                "The license pool has been automatically deactivated."
            )
        return credentials

    async def _provision(
        self,
        user_id,
        sanitized_username,
        license_type,
        credentials,
        license_owner_id,
        allow_license_sharing,
        max_concurrent_users,
    ) -> Dict:
        p = self.provisioners
        completed: List[str] = []

        async def step(name, action):
            try:
                result = await action
            except ProvisioningError:
                raise
            except Exception as exc:
                logging.exception("Create step %s failed for user %s", name, user_id)
                raise ProvisioningError(name, completed, exc) from exc
            completed.append(name)
            return result

        resource_name = f"foundry-{sanitized_username}-{user_id[-8:]}"
        hostname = self.hostname(sanitized_username)

        access_point_id = await step("access_point", p.filesystem.create_access_point(user_id))
        secret_arn = await step("secret", p.vault.store(user_id, credentials))
        await step("bucket", p.storage.create_bucket(resource_name))
        access_key = await step(
            "identity", p.identity.create_principal(resource_name, user_id, resource_name)
        )
        target_group_arn = await step(
            "target_group", p.load_balancer.create_target_group(sanitized_username)
        )
        reserved = [
            i.alb_rule_priority
            for i in await self.store.scan(Instance)
            if i.alb_rule_priority is not None
        ]
        priority = await step("rule_priority", p.load_balancer.next_free_priority(reserved))
        await step("dns", p.dns.upsert_record(hostname))

        instance = Instance(
            user_id=user_id,
            sanitized_username=sanitized_username,
            status=InstanceStatus.CREATED.value,
            license_type=license_type.value,
            license_owner_id=license_owner_id,
            allow_license_sharing=bool(allow_license_sharing),
            max_concurrent_users=max_concurrent_users or 1,
            foundry_version=DEFAULT_FOUNDRY_VERSION,
            access_point_id=access_point_id,
            secret_arn=secret_arn,
            s3_bucket_name=resource_name,
            s3_bucket_url=p.storage.public_url(resource_name),
            iam_user_name=resource_name,
            s3_access_key_id=access_key.access_key_id,
            s3_secret_access_key=access_key.secret_access_key,
            target_group_arn=target_group_arn,
            alb_rule_priority=priority,
        )
        instance = await step("instance_row", self.store.create(instance))

        if license_type == LicenseType.BYOL and allow_license_sharing:
            await step(
                "license_pool",
                license_pools.ensure_pool(
                    self.store, user_id, sanitized_username, max_concurrent_users or 1
                ),
            )

        logging.info("Instance for user %s created: %s", user_id, ", ".join(completed))
        return {
            "message": "Instance created successfully",
            "userId": user_id,
            "status": instance.status,
            "licenseType": instance.license_type,
            "accessPointId": access_point_id,
            "targetGroupArn": target_group_arn,
            "url": self.url(sanitized_username),
            "adminKey": credentials.admin_key,
            "s3BucketName": instance.s3_bucket_name,
            "s3BucketUrl": instance.s3_bucket_url,
        }

    # -- start ---------------------------------------------------------------

    async def start(self, user_id: str) -> Dict:
        """On-demand start of a BYOL instance."""
        async with self._user_locks.hold(user_id):
            instance = await self._require(user_id)
            if instance.license_type == LicenseType.POOLED.value:
                raise InvalidTransitionError(
                    "Pooled instances can only be started through a scheduled session"
                )
            assert_transition(instance.status, InstanceStatus.STARTING)
            if self.scheduler is not None:
                verdict = await self.scheduler.can_start_on_demand_instance(user_id)
                if not verdict.allowed:
                    raise LicenseUnavailableError(verdict.reason)
            instance = await self._launch(instance, instance.license_owner_id, None, None)
            return self._started_payload(instance, "Instance started successfully")

    async def launch(
        self,
        user_id: str,
        license_owner_id: Optional[str],
        linked_session_id: Optional[str],
        session_end_time: Optional[int],
    ) -> Instance:
        """Start an instance bound to a scheduled session."""
        async with self._user_locks.hold(user_id):
            instance = await self._require(user_id)
            assert_transition(instance.status, InstanceStatus.STARTING)
            return await self._launch(instance, license_owner_id, linked_session_id, session_end_time)

    async def _launch(self, instance, license_owner_id, linked_session_id, session_end_time) -> Instance:
        p = self.provisioners
        user_id = instance.user_id
        instance = await self.store.update(
            Instance,
            user_id,
            {
                "status": InstanceStatus.STARTING,
                "license_owner_id": license_owner_id,
                "linked_session_id": linked_session_id,
            },
            expected={"status": instance.status},
        )
        logging.info("Starting instance for user %s on license %s", user_id, license_owner_id)

        task_arn = private_ip = rule_arn = None
        try:
            task_definition_arn = await p.compute.register_task_definition(
                TaskSpec(
                    user_id=user_id,
                    sanitized_username=instance.sanitized_username,
                    access_point_id=instance.access_point_id,
                    secret_arn=instance.secret_arn,
                    foundry_version=instance.foundry_version or DEFAULT_FOUNDRY_VERSION,
                    bucket_name=instance.s3_bucket_name,
                    access_key=_access_key(instance),
                )
            )
            task_arn = await p.compute.run_task(task_definition_arn)
            await self.store.update(
                Instance,
                user_id,
                {"task_arn": task_arn, "task_definition_arn": task_definition_arn},
            )
            private_ip = await p.compute.wait_until_ready(
                task_arn,
                timeout=self.settings.task_ready_timeout,
                interval=self.settings.task_poll_interval,
            )
            await p.load_balancer.register_target(instance.target_group_arn, private_ip)
            rule_arn = await p.load_balancer.create_rule(
                self.hostname(instance.sanitized_username),
                instance.target_group_arn,
                instance.alb_rule_priority,
            )
        except Exception as exc:
            logging.exception("Start failed for user %s; tearing down", user_id)
            await self._teardown_runtime(
                instance.target_group_arn, task_arn, private_ip, rule_arn, best_effort=True
            )
            await self.store.update(
                Instance,
                user_id,
                dict({field: None for field in TRANSIENT_FIELDS}, status=InstanceStatus.STOPPED),
                expected={"status": InstanceStatus.STARTING},
            )
            if isinstance(exc, OrchestratorError):
                raise
            raise ProvisioningError("start", [], exc) from exc

        now = self.store.now()
        auto_shutdown_at = calculate_auto_shutdown_time(
            instance.license_type, now, session_end_time
        )
        instance = await self.store.update(
            Instance,
            user_id,
            {
                "status": InstanceStatus.RUNNING,
                "task_private_ip": private_ip,
                "alb_rule_arn": rule_arn,
                "started_at": now,
                "auto_shutdown_at": auto_shutdown_at,
            },
            expected={"status": InstanceStatus.STARTING},
        )
        logging.info(
            "Instance for user %s running at %s, auto-shutdown at %s",
            user_id,
            private_ip,
            auto_shutdown_at,
        )
        return instance

    def _started_payload(self, instance: Instance, message: str) -> Dict:
        return {
            "message": message,
            "userId": instance.user_id,
            "status": instance.status,
            "url": self.url(instance.sanitized_username),
            "startedAt": instance.started_at,
            "autoShutdownAt": instance.auto_shutdown_at,
            "licenseOwnerId": instance.license_owner_id,
        }

    # -- stop ----------------------------------------------------------------

    async def stop(self, user_id: str, only_if_status=None) -> Optional[Dict]:
        """Stop the user's instance.

        With ``only_if_status`` the call is skipped (returns None) when the
        instance is no longer in one of those states by the time the lock is
        held.
        """
        async with self._user_locks.hold(user_id):
            instance = await self._require(user_id)
            if only_if_status is not None:
                allowed = {InstanceStatus(s).value for s in only_if_status}
                if instance.status not in allowed:
                    logging.info(
                        "Skipping stop for user %s: status is %s", user_id, instance.status
                    )
                    return None
            return await self._stop(instance)

    async def _stop(self, instance: Instance) -> Dict:
        user_id = instance.user_id
        if instance.status in (InstanceStatus.CREATED.value, InstanceStatus.STOPPED.value) and not instance.task_arn:
            logging.info("Instance for user %s is already stopped", user_id)
            return {"message": "Instance is already stopped", "userId": user_id, "status": instance.status}

        assert_transition(instance.status, InstanceStatus.STOPPING)
        await self.store.update(
            Instance,
            user_id,
            {"status": InstanceStatus.STOPPING},
            expected={"status": instance.status},
        )
        await self._teardown_runtime(
            instance.target_group_arn,
            instance.task_arn,
            instance.task_private_ip,
            instance.alb_rule_arn,
        )
        changes = {field: None for field in TRANSIENT_FIELDS}
        changes["status"] = InstanceStatus.STOPPED
        await self.store.update(
            Instance, user_id, changes, expected={"status": InstanceStatus.STOPPING}
        )
        logging.info("Instance for user %s stopped", user_id)
        return {"message": "Instance stopped successfully", "userId": user_id, "status": "stopped"}

    async def _teardown_runtime(self, target_group_arn, task_arn, private_ip, rule_arn, best_effort=False):
        lb = self.provisioners.load_balancer
        calls = []
        if target_group_arn and private_ip:
            calls.append(("deregister", lambda: lb.deregister_target(target_group_arn, private_ip)))
        if rule_arn:
            calls.append(("delete_rule", lambda: lb.delete_rule(rule_arn)))
        if task_arn:
            calls.append(("stop_task", lambda: self.provisioners.compute.stop_task(task_arn)))
        for name, call in calls:
            if not best_effort:
                await call()
                continue
            try:
                await call()
            except Exception:
                logging.exception("Teardown step %s failed", name)

    # -- destroy -------------------------------------------------------------

    async def destroy(self, user_id: str, keep_license_sharing: bool = False) -> Dict:
        cancelled = 0
        if self.scheduler is not None:
            cancelled = await self.scheduler.cancel_user_sessions(user_id)

        license_id = pool_id_for(user_id)
        async with self._user_locks.hold(user_id):
            instance = await self.store.get(Instance, user_id)
            if instance is None:
                if not keep_license_sharing and await license_pools.deactivate_pool(self.store, license_id):
                    logging.info("Deactivated orphaned license pool %s", license_id)
                raise NotFoundError("Instance not found")

            p = self.provisioners
            failed: List[str] = []

            async def step(name, action):
                try:
                    await action
                except Exception:
                    logging.exception("Destroy step %s failed for user %s", name, user_id)
                    failed.append(name)

            if instance.task_arn or instance.status in (
                InstanceStatus.RUNNING.value,
                InstanceStatus.STARTING.value,
                InstanceStatus.STOPPING.value,
            ):
                await step("stop", self._stop(instance))
            if instance.target_group_arn:
                await step("target_group", p.load_balancer.delete_target_group(instance.target_group_arn))
            await step("dns", p.dns.delete_record(self.hostname(instance.sanitized_username)))
            if instance.access_point_id:
                try:
                    await p.filesystem.run_cleanup(user_id)
                except Exception:
                    logging.exception("Filesystem cleanup job failed for user %s", user_id)
                await step("access_point", p.filesystem.delete_access_point(instance.access_point_id))
            if instance.s3_bucket_name:
                await step("bucket", p.storage.delete_bucket(instance.s3_bucket_name))
            if instance.iam_user_name:
                await step("identity", p.identity.delete_principal(instance.iam_user_name))
            if keep_license_sharing:
                logging.info("Keeping vaulted credentials of user %s for the shared license", user_id)
            else:
                await step("secret", p.vault.delete(user_id))
                await step("license_pool", license_pools.deactivate_pool(self.store, license_id))
            await self.store.delete(Instance, user_id)

        logging.info("Instance for user %s destroyed (failed steps: %s)", user_id, failed or "none")
        return {
            "message": "Instance destroyed successfully",
            "userId": user_id,
            "cancelledSessionsCount": cancelled,
            "licenseSharingKept": bool(keep_license_sharing),
            "failedSteps": failed,
        }

    async def delete_user(self, user_id: str) -> Dict:
        """Destroy the instance (if any) and forget the user's vaulted credentials."""
        try:
            result = await self.destroy(user_id, keep_license_sharing=False)
        except NotFoundError:
            result = {"userId": user_id, "cancelledSessionsCount": 0, "failedSteps": []}
        await self.provisioners.vault.delete(user_id)
        await license_pools.deactivate_pool(self.store, pool_id_for(user_id))
        result["message"] = "User data deleted successfully"
        return result

    # -- queries -------------------------------------------------------------

    async def status(self, user_id: str) -> Dict:
        instance = await self._require(user_id)
        live_status = instance.status
        if instance.task_arn:
            task_status = await self.provisioners.compute.get_task_status(instance.task_arn)
            if task_status is not None and task_status != "unknown":
                live_status = task_status
            if task_status in (None, "stopped") and instance.status == InstanceStatus.RUNNING.value:
                logging.warning("Task for user %s is gone; reconciling to stopped", user_id)
                await self.stop(user_id, only_if_status=[InstanceStatus.RUNNING])
                live_status = InstanceStatus.STOPPED.value
                instance = await self._require(user_id)

        next_session = None
        now = self.store.now()
        upcoming = [
            s
            for s in await self.store.sessions_for_user(user_id)
            if s.status == SessionStatus.SCHEDULED.value and s.start_time > now
        ]
        if upcoming:
            next_session = min(upcoming, key=lambda s: s.start_time).to_dict()

        payload = instance.to_dict()
        payload.update(
            {
                "status": live_status,
                "url": self.url(instance.sanitized_username),
                "nextScheduledSession": next_session,
            }
        )
        return payload

    async def list_all(self) -> Dict:
        instances = await self.store.scan(Instance)
        instances.sort(key=lambda i: i.created_at)
        return {"instances": [i.to_dict() for i in instances], "count": len(instances)}

    async def update_version(self, user_id: str, foundry_version: str) -> Dict:
        foundry_version = validate_version(foundry_version)
        async with self._user_locks.hold(user_id):
            instance = await self._require(user_id)
            current = instance.foundry_version or DEFAULT_FOUNDRY_VERSION
            permissions_reset = False
            target_owner = uid_gid_for_version(foundry_version)
            if target_owner != uid_gid_for_version(current) and instance.access_point_id:
                try:
                    await self.provisioners.filesystem.reset_ownership(user_id, *target_owner)
                    permissions_reset = True
                except Exception:
                    logging.exception(
                        "Ownership reset to %s:%s failed for user %s", *target_owner, user_id
                    )
            await self.store.update(Instance, user_id, {"foundry_version": foundry_version})

        logging.info("Foundry version for user %s: %s -> %s", user_id, current, foundry_version)
        return {
            "message": f"Foundry version updated to {foundry_version}",
            "userId": user_id,
            "foundryVersion": foundry_version,
            "previousVersion": current,
            "permissionsReset": permissions_reset,
            "note": "Restart your instance to use the new version",
        }

    async def borrow_credentials(self, user_id: str, license_id: str) -> None:
        """Point a pooled instance's vault entry at ``license_id``'s owner credentials."""
        owner = await self.owner_credentials(license_id)
        own = await self.provisioners.vault.get(user_id)
        admin_key = own.admin_key if own is not None and own.admin_key else secrets.token_hex(16)
        secret_arn = await self.provisioners.vault.store(
            user_id, Credentials(owner.username, owner.password, admin_key)
        )
        await self.store.update(Instance, user_id, {"secret_arn": secret_arn})
        logging.info("User %s now borrows credentials of license %s", user_id, license_id)


def _access_key(instance: Instance) -> Optional[AccessKey]:
    if instance.s3_access_key_id and instance.s3_secret_access_key:
        return AccessKey(instance.s3_access_key_id, instance.s3_secret_access_key)
    return None
