"""Shared helpers for the boto3-backed provisioners."""

import asyncio

import boto3
from botocore.exceptions import ClientError


def make_client(service: str, settings):
    return boto3.client(service, region_name=settings.aws_region)


async def call(client, operation: str, **params):
    """Run a blocking boto3 operation in a worker thread."""
    return await asyncio.to_thread(getattr(client, operation), **params)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", "") or str(exc)


def tags(**values):
    return [{"Key": key, "Value": value} for key, value in values.items()]
