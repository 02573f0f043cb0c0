"""Per-user S3 buckets, public-read for Foundry assets and versioned."""

import asyncio
import json
import logging

from botocore.exceptions import ClientError

from foundry_host.provisioners.aws.client import call, error_code, make_client, tags

DELETE_BATCH = 1000


class S3Storage:
    def __init__(self, settings, client=None):
        self.region = settings.aws_region
        self._client = client or make_client("s3", settings)

    def public_url(self, bucket_name: str) -> str:
        return f"https://{bucket_name}.s3.{self.region}.amazonaws.com"

    async def create_bucket(self, bucket_name: str) -> None:
        params = {"Bucket": bucket_name}
        if self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            await call(self._client, "create_bucket", **params)
        except ClientError as exc:
            if error_code(exc) != "BucketAlreadyOwnedByYou":
                raise
            logging.info("Bucket %s already exists", bucket_name)

        await call(
            self._client,
            "put_bucket_tagging",
            Bucket=bucket_name,
            Tagging={"TagSet": tags(Application="FoundryVTT")},
        )
        await call(
            self._client,
            "put_bucket_ownership_controls",
            Bucket=bucket_name,
            OwnershipControls={"Rules": [{"ObjectOwnership": "BucketOwnerPreferred"}]},
        )
        await call(
            self._client,
            "put_public_access_block",
            Bucket=bucket_name,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": False,
                "IgnorePublicAcls": False,
                "BlockPublicPolicy": False,
                "RestrictPublicBuckets": False,
            },
        )
        await call(
            self._client,
            "put_bucket_policy",
            Bucket=bucket_name,
            Policy=json.dumps(
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Sid": "PublicReadGetObject",
                            "Effect": "Allow",
                            "Principal": "*",
                            "Action": "s3:GetObject",
                            "Resource": f"arn:aws:s3:::{bucket_name}/*",
                        }
                    ],
                }
            ),
        )
        await call(
            self._client,
            "put_bucket_cors",
            Bucket=bucket_name,
            CORSConfiguration={
                "CORSRules": [
                    {
                        "AllowedOrigins": ["*"],
                        "AllowedHeaders": ["*"],
                        "AllowedMethods": ["GET", "POST", "HEAD"],
                        "MaxAgeSeconds": 3000,
                    }
                ]
            },
        )
        await call(
            self._client,
            "put_bucket_versioning",
            Bucket=bucket_name,
            VersioningConfiguration={"Status": "Enabled"},
        )
        logging.info("Created bucket %s", bucket_name)

    async def delete_bucket(self, bucket_name: str) -> None:
        try:
            removed = await asyncio.to_thread(self._purge, bucket_name)
            await call(self._client, "delete_bucket", Bucket=bucket_name)
        except ClientError as exc:
            if error_code(exc) != "NoSuchBucket":
                raise
            logging.info("Bucket %s already absent", bucket_name)
            return
        logging.info("Deleted bucket %s after removing %d versions", bucket_name, removed)

    def _purge(self, bucket_name: str) -> int:
        """Delete every object version and delete marker in the bucket."""
        removed = 0
        paginator = self._client.get_paginator("list_object_versions")
        for page in paginator.paginate(Bucket=bucket_name):
            entries = [
                {"Key": item["Key"], "VersionId": item["VersionId"]}
                for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
            ]
            for offset in range(0, len(entries), DELETE_BATCH):
                batch = entries[offset:offset + DELETE_BATCH]
                self._client.delete_objects(
                    Bucket=bucket_name, Delete={"Objects": batch, "Quiet": True}
                )
                removed += len(batch)
        return removed
