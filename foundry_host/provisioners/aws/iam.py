import json
import logging

from botocore.exceptions import ClientError

from foundry_host.provisioners.aws.client import call, error_code, make_client, tags
from foundry_host.provisioners.base import AccessKey

POLICY_NAME = "FoundryS3BucketAccess"


def bucket_policy(bucket_name: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": [
                        "s3:GetObject",
                        "s3:PutObject",
                        "s3:PutObjectAcl",
                        "s3:DeleteObject",
                        "s3:ListBucket",
                        "s3:GetBucketLocation",
                    ],
                    "Resource": [
                        f"arn:aws:s3:::{bucket_name}",
                        f"arn:aws:s3:::{bucket_name}/*",
                    ],
                }
            ],
        }
    )


class IamIdentity:
    def __init__(self, settings, client=None):
        self._client = client or make_client("iam", settings)

    async def create_principal(self, user_name: str, user_id: str, bucket_name: str) -> AccessKey:
        await call(
            self._client,
            "create_user",
            UserName=user_name,
            Path="/foundry/",
            Tags=tags(UserId=user_id, Application="FoundryVTT", Purpose="S3BucketAccess"),
        )
        await call(
            self._client,
            "put_user_policy",
            UserName=user_name,
            PolicyName=POLICY_NAME,
            PolicyDocument=bucket_policy(bucket_name),
        )
        response = await call(self._client, "create_access_key", UserName=user_name)
        key = response["AccessKey"]
        logging.info("Created IAM user %s with access to %s", user_name, bucket_name)
        return AccessKey(key["AccessKeyId"], key["SecretAccessKey"])

    async def delete_principal(self, user_name: str) -> None:
        try:
            keys = await call(self._client, "list_access_keys", UserName=user_name)
        except ClientError as exc:
            if error_code(exc) != "NoSuchEntity":
                raise
            logging.info("IAM user %s already absent", user_name)
            return
        for key in keys.get("AccessKeyMetadata", []):
            await call(
                self._client, "delete_access_key", UserName=user_name, AccessKeyId=key["AccessKeyId"]
            )
        try:
            await call(self._client, "delete_user_policy", UserName=user_name, PolicyName=POLICY_NAME)
        except ClientError as exc:
            if error_code(exc) != "NoSuchEntity":
                raise
        await call(self._client, "delete_user", UserName=user_name)
        logging.info("Deleted IAM user %s", user_name)
