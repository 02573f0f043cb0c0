import logging

from botocore.exceptions import ClientError

from foundry_host.errors import ProvisioningError
from foundry_host.provisioners.aws.client import call, error_code, make_client, tags
from foundry_host.services.polling import poll_until

ACCESS_POINT_TIMEOUT = 300
ACCESS_POINT_POLL_INTERVAL = 5


class EfsFilesystem:
    def __init__(self, settings, compute, client=None):
        settings.require("file_system_id")
        self.settings = settings
        self.compute = compute
        self._client = client or make_client("efs", settings)

    async def create_access_point(self, user_id: str) -> str:
        response = await call(
            self._client,
            "create_access_point",
            FileSystemId=self.settings.file_system_id,
            PosixUser={"Uid": 1000, "Gid": 1000},
            RootDirectory={
                "Path": f"/foundry-instances/{user_id}",
                "CreationInfo": {"OwnerUid": 1000, "OwnerGid": 1000, "Permissions": "755"},
            },
            Tags=tags(Name=f"foundry-{user_id}", UserId=user_id),
        )
        access_point_id = response["AccessPointId"]

        async def available():
            described = await call(self._client, "describe_access_points", AccessPointId=access_point_id)
            points = described.get("AccessPoints") or []
            state = points[0].get("LifeCycleState") if points else None
            if state == "error":
                raise ProvisioningError(
                    "access_point", [], RuntimeError(f"Access point {access_point_id} creation failed")
                )
            return True if state == "available" else None

        await poll_until(
            available,
            interval=ACCESS_POINT_POLL_INTERVAL,
            timeout=ACCESS_POINT_TIMEOUT,
            description=f"access point {access_point_id}",
        )
        logging.info("Access point %s ready for user %s", access_point_id, user_id)
        return access_point_id

    async def delete_access_point(self, access_point_id: str) -> None:
        try:
            await call(self._client, "delete_access_point", AccessPointId=access_point_id)
        except ClientError as exc:
            if error_code(exc) != "AccessPointNotFound":
                raise
            logging.info("Access point %s already absent", access_point_id)

    async def run_cleanup(self, user_id: str) -> None:
        await self.compute.run_job(
            "foundry-efs-cleanup",
            "cleanup",
            'rm -rf "/efs/foundry-instances/$USER_ID"',
            user_id,
        )

    async def reset_ownership(self, user_id: str, uid: int, gid: int) -> None:
        logging.info("Resetting ownership of user %s files to %s:%s", user_id, uid, gid)
        await self.compute.run_job(
            "foundry-permission-reset",
            "permission-reset",
            f'chown -R {uid}:{gid} "/efs/foundry-instances/$USER_ID"',
            user_id,
        )
