"""Per-user Foundry credentials in AWS Secrets Manager."""

import json
import logging
from typing import Optional

from botocore.exceptions import ClientError

from foundry_host.errors import SecretVaultError
from foundry_host.provisioners.aws.client import call, error_code, error_message, make_client, tags
from foundry_host.provisioners.base import Credentials


def secret_name(user_id: str) -> str:
    return f"foundry-credentials-{user_id}"


class SecretsManagerVault:
    def __init__(self, settings, client=None):
        self._client = client or make_client("secretsmanager", settings)

    async def store(self, user_id: str, credentials: Credentials) -> str:
        name = secret_name(user_id)
        payload = json.dumps(credentials.to_secret())
        try:
            response = await call(
                self._client,
                "create_secret",
                Name=name,
                Description=f"Foundry VTT credentials for user {user_id}",
                SecretString=payload,
                Tags=tags(UserId=user_id, Application="FoundryVTT"),
            )
            logging.info("Created secret %s", name)
            return response["ARN"]
        except ClientError as exc:
            code = error_code(exc)
            if code == "ResourceExistsException":
                return await self._update(name, payload)
            if code == "InvalidRequestException" and "scheduled for deletion" in error_message(exc):
                return await self._restore_and_update(name, payload, exc)
            raise

    async def _update(self, name: str, payload: str) -> str:
        response = await call(self._client, "update_secret", SecretId=name, SecretString=payload)
        logging.info("Updated secret %s", name)
        return response["ARN"]

    async def _restore_and_update(self, name: str, payload: str, original: ClientError) -> str:
        logging.warning("Secret %s is scheduled for deletion; restoring", name)
        try:
            await call(self._client, "restore_secret", SecretId=name)
            return await self._update(name, payload)
        except ClientError as exc:
            logging.exception("Could not restore secret %s", name)
            raise SecretVaultError(
                f"Secret {name} is scheduled for deletion and cannot be restored. "
                "Please try again in a few minutes, or contact an admin if this persists. "
                f"Original error: {error_message(original)}"
            ) from exc

    async def get(self, user_id: str) -> Optional[Credentials]:
        name = secret_name(user_id)
        try:
            response = await call(self._client, "get_secret_value", SecretId=name)
        except ClientError as exc:
            if error_code(exc) == "ResourceNotFoundException":
                logging.info("No stored credentials for user %s", user_id)
                return None
            if error_code(exc) == "InvalidRequestException":
                logging.warning("Secret %s is not readable: %s", name, error_message(exc))
                return None
            raise
        return Credentials.from_secret(json.loads(response["SecretString"]))

    async def delete(self, user_id: str) -> None:
        name = secret_name(user_id)
        try:
            await call(self._client, "delete_secret", SecretId=name, ForceDeleteWithoutRecovery=True)
        except ClientError as exc:
            if error_code(exc) != "ResourceNotFoundException":
                raise
            logging.info("Secret %s already absent", name)
            return
        logging.info("Deleted secret %s", name)
