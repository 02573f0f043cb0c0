import asyncio
import sys
from pathlib import Path

import boto3
import pytest
from botocore.stub import ANY, Stubber

sys.path.append(str(Path(__file__).resolve().parents[1]))

from foundry_host.config import Settings
from foundry_host.errors import ConfigurationError, ProvisioningError, SecretVaultError
from foundry_host.provisioners.aws.ecs import EcsCompute
from foundry_host.provisioners.aws.elb import AlbLoadBalancer
from foundry_host.provisioners.aws.iam import IamIdentity
from foundry_host.provisioners.aws.route53 import Route53Registrar
from foundry_host.provisioners.aws.s3 import S3Storage
from foundry_host.provisioners.aws.secrets import SecretsManagerVault
from foundry_host.provisioners.base import AccessKey, Credentials, TaskSpec, uid_gid_for_version

SETTINGS = Settings(
    aws_region="eu-west-1",
    cluster_name="foundry",
    file_system_id="fs-1",
    https_listener_arn="arn:aws:elasticloadbalancing:listener/https",
    alb_dns_name="alb.example.com",
    alb_zone_id="Z-ALB",
    vpc_id="vpc-1",
    hosted_zone_id="Z-HOSTED",
    domain_name="vtt.example.com",
    private_subnet_ids=["subnet-a", "subnet-b"],
    task_security_group_id="sg-1",
    execution_role_arn="arn:aws:iam::1:role/exec",
    task_role_arn="arn:aws:iam::1:role/task",
)

SECRET_ARN = "arn:aws:secretsmanager:eu-west-1:1:secret:foundry-credentials-u1"
SCHEDULED_FOR_DELETION = (
    "You can't create this secret because a secret with this name is already scheduled for deletion."
)


def _client(service):
    return boto3.client(
        service,
        region_name="eu-west-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def test_uid_gid_for_version():
    assert uid_gid_for_version("11") == (421, 421)
    assert uid_gid_for_version("12.331") == (421, 421)
    assert uid_gid_for_version("13") == (1000, 1000)
    assert uid_gid_for_version("release") == (1000, 1000)


def test_required_settings_are_checked():
    with pytest.raises(ConfigurationError, match="alb_dns_name, alb_zone_id, hosted_zone_id"):
        Route53Registrar(Settings(), client=_client("route53"))


def test_secret_scheduled_for_deletion_is_restored():
    client = _client("secretsmanager")
    stubber = Stubber(client)
    stubber.add_client_error(
        "create_secret",
        service_error_code="InvalidRequestException",
        service_message=SCHEDULED_FOR_DELETION,
    )
    stubber.add_response(
        "restore_secret",
        {"ARN": SECRET_ARN, "Name": "foundry-credentials-u1"},
        {"SecretId": "foundry-credentials-u1"},
    )
    stubber.add_response(
        "update_secret",
        {"ARN": SECRET_ARN, "Name": "foundry-credentials-u1"},
        {"SecretId": "foundry-credentials-u1", "SecretString": ANY},
    )
    vault = SecretsManagerVault(SETTINGS, client=client)

    with stubber:
        arn = asyncio.run(vault.store("u1", Credentials("fu", "pw", "key")))

    assert arn == SECRET_ARN
    stubber.assert_no_pending_responses()


def test_unrestorable_secret_raises_vault_error():
    client = _client("secretsmanager")
    stubber = Stubber(client)
    stubber.add_client_error(
        "create_secret",
        service_error_code="InvalidRequestException",
        service_message=SCHEDULED_FOR_DELETION,
    )
    stubber.add_client_error("restore_secret", service_error_code="InvalidRequestException")
    vault = SecretsManagerVault(SETTINGS, client=client)

    with stubber, pytest.raises(SecretVaultError, match="cannot be restored"):
        asyncio.run(vault.store("u1", Credentials("fu", "pw")))


def test_missing_secret_reads_as_none_and_deletes_quietly():
    client = _client("secretsmanager")
    stubber = Stubber(client)
    stubber.add_client_error("get_secret_value", service_error_code="ResourceNotFoundException")
    stubber.add_client_error("delete_secret", service_error_code="ResourceNotFoundException")
    vault = SecretsManagerVault(SETTINGS, client=client)

    async def scenario():
        assert await vault.get("u1") is None
        await vault.delete("u1")

    with stubber:
        asyncio.run(scenario())
    stubber.assert_no_pending_responses()


def test_bucket_delete_purges_versions_first():
    client = _client("s3")
    stubber = Stubber(client)
    stubber.add_response(
        "list_object_versions",
        {
            "IsTruncated": False,
            "Versions": [{"Key": "worlds/a.json", "VersionId": "v1"}],
            "DeleteMarkers": [{"Key": "worlds/b.json", "VersionId": "v2"}],
        },
        {"Bucket": "foundry-u1"},
    )
    stubber.add_response(
        "delete_objects",
        {},
        {
            "Bucket": "foundry-u1",
            "Delete": {
                "Objects": [
                    {"Key": "worlds/a.json", "VersionId": "v1"},
                    {"Key": "worlds/b.json", "VersionId": "v2"},
                ],
                "Quiet": True,
            },
        },
    )
    stubber.add_response("delete_bucket", {}, {"Bucket": "foundry-u1"})
    storage = S3Storage(SETTINGS, client=client)

    with stubber:
        asyncio.run(storage.delete_bucket("foundry-u1"))
    stubber.assert_no_pending_responses()
    assert storage.public_url("foundry-u1") == "https://foundry-u1.s3.eu-west-1.amazonaws.com"


def test_missing_bucket_delete_is_a_no_op():
    client = _client("s3")
    stubber = Stubber(client)
    stubber.add_client_error("list_object_versions", service_error_code="NoSuchBucket")
    storage = S3Storage(SETTINGS, client=client)

    with stubber:
        asyncio.run(storage.delete_bucket("gone"))


def test_next_free_priority_skips_used_and_reserved():
    client = _client("elbv2")
    stubber = Stubber(client)
    stubber.add_response(
        "describe_rules",
        {"Rules": [{"Priority": "100"}], "NextMarker": "page-2"},
        {"ListenerArn": SETTINGS.https_listener_arn},
    )
    stubber.add_response(
        "describe_rules",
        {"Rules": [{"Priority": "110"}, {"Priority": "default", "IsDefault": True}]},
        {"ListenerArn": SETTINGS.https_listener_arn, "Marker": "page-2"},
    )
    load_balancer = AlbLoadBalancer(SETTINGS, client=client)

    with stubber:
        priority = asyncio.run(load_balancer.next_free_priority(reserved=[120]))
    assert priority == 130


def test_missing_dns_record_delete_is_a_no_op():
    client = _client("route53")
    stubber = Stubber(client)
    stubber.add_client_error("change_resource_record_sets", service_error_code="InvalidChangeBatch")
    registrar = Route53Registrar(SETTINGS, client=client)

    with stubber:
        asyncio.run(registrar.delete_record("u1.vtt.example.com"))
    stubber.assert_no_pending_responses()


def test_identity_teardown_removes_keys_policy_and_user():
    client = _client("iam")
    stubber = Stubber(client)
    stubber.add_response(
        "list_access_keys",
        {"AccessKeyMetadata": [{"AccessKeyId": "AKIAEXAMPLE12345"}]},
        {"UserName": "foundry-u1"},
    )
    stubber.add_response(
        "delete_access_key", {}, {"UserName": "foundry-u1", "AccessKeyId": "AKIAEXAMPLE12345"}
    )
    stubber.add_response(
        "delete_user_policy", {}, {"UserName": "foundry-u1", "PolicyName": "FoundryS3BucketAccess"}
    )
    stubber.add_response("delete_user", {}, {"UserName": "foundry-u1"})
    identity = IamIdentity(SETTINGS, client=client)

    with stubber:
        asyncio.run(identity.delete_principal("foundry-u1"))
    stubber.assert_no_pending_responses()


def test_foundry_task_definition_layout():
    compute = EcsCompute(SETTINGS, client=_client("ecs"))
    definition = compute.foundry_task_definition(
        TaskSpec(
            user_id="u1",
            sanitized_username="alice",
            access_point_id="fsap-1",
            secret_arn=SECRET_ARN,
            foundry_version="12",
            bucket_name="foundry-alice-u1",
            access_key=AccessKey("AKIA", "secret"),
        )
    )

    assert definition["family"] == "foundry-u1"
    assert (definition["cpu"], definition["memory"]) == ("1024", "2048")
    sidecar, foundry = definition["containerDefinitions"]
    assert sidecar["name"] == "aws-config-creator"
    assert foundry["image"] == "felddy/foundryvtt:12"
    assert foundry["dependsOn"] == [{"containerName": "aws-config-creator", "condition": "SUCCESS"}]
    assert {"name": "FOUNDRY_HOSTNAME", "value": "alice.vtt.example.com"} in foundry["environment"]
    assert [s["name"] for s in foundry["secrets"]] == [
        "FOUNDRY_USERNAME",
        "FOUNDRY_PASSWORD",
        "FOUNDRY_ADMIN_KEY",
    ]
    volume = definition["volumes"][0]["efsVolumeConfiguration"]
    assert volume["authorizationConfig"] == {"accessPointId": "fsap-1"}


def test_task_readiness_and_status():
    client = _client("ecs")
    stubber = Stubber(client)
    params = {"cluster": "foundry", "tasks": ["arn:task/1"]}
    stubber.add_response("describe_tasks", {"tasks": [{"lastStatus": "PROVISIONING"}]}, params)
    stubber.add_response(
        "describe_tasks",
        {
            "tasks": [
                {
                    "lastStatus": "RUNNING",
                    "attachments": [
                        {"details": [{"name": "privateIPv4Address", "value": "10.1.2.3"}]}
                    ],
                }
            ]
        },
        params,
    )
    stubber.add_response("describe_tasks", {"tasks": [{"lastStatus": "DEPROVISIONING"}]}, params)
    stubber.add_response("describe_tasks", {"tasks": [], "failures": []}, params)
    compute = EcsCompute(SETTINGS, client=client)

    async def scenario():
        address = await compute.wait_until_ready("arn:task/1", timeout=5, interval=0)
        assert address == "10.1.2.3"
        assert await compute.get_task_status("arn:task/1") == "stopping"
        assert await compute.get_task_status("arn:task/1") is None

    with stubber:
        asyncio.run(scenario())
    stubber.assert_no_pending_responses()


def test_stopped_task_aborts_readiness_wait():
    client = _client("ecs")
    stubber = Stubber(client)
    stubber.add_response(
        "describe_tasks",
        {"tasks": [{"lastStatus": "STOPPED", "stoppedReason": "Essential container exited"}]},
    )
    compute = EcsCompute(SETTINGS, client=client)

    with stubber, pytest.raises(ProvisioningError, match="Essential container exited"):
        asyncio.run(compute.wait_until_ready("arn:task/1", timeout=5, interval=0))
