from foundry_host.provisioners.aws.ecs import EcsCompute
from foundry_host.provisioners.aws.efs import EfsFilesystem
from foundry_host.provisioners.aws.elb import AlbLoadBalancer
from foundry_host.provisioners.aws.iam import IamIdentity
from foundry_host.provisioners.aws.route53 import Route53Registrar
from foundry_host.provisioners.aws.s3 import S3Storage
from foundry_host.provisioners.aws.secrets import SecretsManagerVault
from foundry_host.provisioners.base import Provisioners


def build_aws_provisioners(settings) -> Provisioners:
    compute = EcsCompute(settings)
    return Provisioners(
        compute=compute,
        load_balancer=AlbLoadBalancer(settings),
        dns=Route53Registrar(settings),
        filesystem=EfsFilesystem(settings, compute),
        storage=S3Storage(settings),
        identity=IamIdentity(settings),
        vault=SecretsManagerVault(settings),
    )
