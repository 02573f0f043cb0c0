import logging

from botocore.exceptions import ClientError

from foundry_host.provisioners.aws.client import call, error_code, make_client


class Route53Registrar:
    def __init__(self, settings, client=None):
        settings.require("hosted_zone_id", "alb_dns_name", "alb_zone_id")
        self.settings = settings
        self._client = client or make_client("route53", settings)

    def _change(self, action: str, hostname: str):
        return {
            "Comment": f"{action} DNS record for {hostname}",
            "Changes": [
                {
                    "Action": action,
                    "ResourceRecordSet": {
                        "Name": hostname,
                        "Type": "A",
                        "AliasTarget": {
                            "DNSName": self.settings.alb_dns_name,
                            "EvaluateTargetHealth": False,
                            "HostedZoneId": self.settings.alb_zone_id,
                        },
                    },
                }
            ],
        }

    async def upsert_record(self, hostname: str) -> None:
        await call(
            self._client,
            "change_resource_record_sets",
            HostedZoneId=self.settings.hosted_zone_id,
            ChangeBatch=self._change("UPSERT", hostname),
        )
        logging.info("DNS record %s points at the load balancer", hostname)

    async def delete_record(self, hostname: str) -> None:
        try:
            await call(
                self._client,
                "change_resource_record_sets",
                HostedZoneId=self.settings.hosted_zone_id,
                ChangeBatch=self._change("DELETE", hostname),
            )
        except ClientError as exc:
            if error_code(exc) != "InvalidChangeBatch":
                raise
            logging.info("DNS record %s already absent", hostname)
            return
        logging.info("Deleted DNS record %s", hostname)
