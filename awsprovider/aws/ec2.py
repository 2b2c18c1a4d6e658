"""EC2 compute backend adapter.

Every call is a single attempt (botocore retries are switched off) gated by
a per-region token bucket. "Instance not found" is returned as a value, never
raised; all other ``ClientError``s propagate to the caller unchanged.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from botocore.utils import InstanceMetadataRegionFetcher

from awsprovider.context import Context
from awsprovider.errors import NoEligibleSecurityGroupError, NoEligibleSubnetError
from awsprovider.metrics import AWS_REQUESTS
from awsprovider.ratelimit import LimiterRegistry, TokenBucket
from awsprovider.types import (
    EXTERNAL_DNS,
    EXTERNAL_IP,
    INTERNAL_DNS,
    INTERNAL_IP,
    AWSMachineSpec,
    MachineAddress,
)

logger = logging.getLogger(__name__)

INSTANCE_NOT_FOUND = "InvalidInstanceID.NotFound"

STATE_PENDING = "pending"
STATE_RUNNING = "running"
STATE_SHUTTING_DOWN = "shutting-down"
STATE_TERMINATED = "terminated"
STATE_STOPPING = "stopping"
STATE_STOPPED = "stopped"

SUBNET_STATE_AVAILABLE = "available"


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str

    def __repr__(self) -> str:
        return f"Credentials(access_key_id={self.access_key_id!r})"


def credentials_from_secret(data: Dict[str, bytes]) -> Optional[Credentials]:
    """
    Static credentials from a secret's data.

    Both keys must be present and non-empty; a partial pair is ignored so the
    default credential chain stays in effect.
    """
    key_id = (data.get("AWS_ACCESS_KEY_ID") or b"").decode("utf-8").strip()
    secret = (data.get("AWS_SECRET_ACCESS_KEY") or b"").decode("utf-8").strip()
    if key_id and secret:
        return Credentials(access_key_id=key_id, secret_access_key=secret)
    return None


def pick_subnet(subnet_ids: List[str], rng: Optional[random.Random] = None) -> str:
    """Pick one subnet uniformly at random to spread instances across subnets."""
    if not subnet_ids:
        raise NoEligibleSubnetError("no subnets to choose from")
    rng = rng or random.Random()
    return rng.choice(list(subnet_ids))


def instance_addresses(instance: Dict[str, Any]) -> List[MachineAddress]:
    """Addresses of every network interface, public ones only when associated."""
    addresses: List[MachineAddress] = []
    for eni in instance.get("NetworkInterfaces") or []:
        addresses.append(MachineAddress(type=INTERNAL_DNS, address=eni.get("PrivateDnsName", "")))
        addresses.append(MachineAddress(type=INTERNAL_IP, address=eni.get("PrivateIpAddress", "")))
        association = eni.get("Association")
        if association is not None:
            addresses.append(MachineAddress(type=EXTERNAL_DNS, address=association.get("PublicDnsName", "")))
            addresses.append(MachineAddress(type=EXTERNAL_IP, address=association.get("PublicIp", "")))
    return addresses


def lookup_region() -> Optional[str]:
    """Region of the EC2 instance we are running on, if any."""
    try:
        return InstanceMetadataRegionFetcher().retrieve_region()
    except Exception as e:
        logger.debug(f"Instance metadata region lookup failed: {e}")
        return None


def _block_device_mappings(spec: AWSMachineSpec) -> List[Dict[str, Any]]:
    mappings = []
    for b in spec.block_devices:
        mappings.append({
            "DeviceName": b.device_name,
            "Ebs": {
                "VolumeSize": b.volume_size,
                "VolumeType": b.volume_type,
                "Encrypted": b.encrypted,
            },
        })
    return mappings


def _tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def _is_not_found(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == INSTANCE_NOT_FOUND


class EC2Client:
    """
    Region-scoped EC2 adapter.

    Args:
        region: AWS region the client talks to
        credentials: Static credentials; None uses the default chain
        limiter: Token bucket shared by all clients for this region
        client: Pre-built boto3 EC2 client (tests inject a mock here)
        rng: Random source used for subnet selection
    """

    def __init__(
        self,
        region: str,
        credentials: Optional[Credentials] = None,
        limiter: Optional[TokenBucket] = None,
        client: Any = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.region = region
        self.limiter = limiter
        self.rng = rng or random.Random()
        if client is None:
            client = self._build_client(region, credentials, connect_timeout, read_timeout)
        self._ec2 = client

    @staticmethod
    def _build_client(
        region: str,
        credentials: Optional[Credentials],
        connect_timeout: float,
        read_timeout: float,
    ) -> Any:
        session_args: Dict[str, Any] = {"region_name": region}
        if credentials is not None:
            session_args["aws_access_key_id"] = credentials.access_key_id
            session_args["aws_secret_access_key"] = credentials.secret_access_key
        boto_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        return boto3.Session(**session_args).client("ec2", config=boto_config)

    def _call(self, ctx: Context, operation: str, **kwargs: Any) -> Dict[str, Any]:
        ctx.check()
        if self.limiter is not None:
            self.limiter.wait(ctx)
        AWS_REQUESTS.labels(operation=operation).inc()
        return getattr(self._ec2, operation)(**kwargs)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def resolve_security_groups(self, ctx: Context, names: List[str]) -> List[str]:
        """
        Resolve security group names to ids.

        Raises:
            NoEligibleSecurityGroupError: If names were given but none resolved
        """
        if not names:
            return []
        resp = self._call(
            ctx,
            "describe_security_groups",
            Filters=[{"Name": "group-name", "Values": list(names)}],
        )
        ids = [sg["GroupId"] for sg in resp.get("SecurityGroups", [])]
        if not ids:
            raise NoEligibleSecurityGroupError(f"cannot resolve security groups: {names}")
        return ids

    def resolve_subnets(
        self,
        ctx: Context,
        vpc_id: str,
        availability_zone: str = "",
        subnet_ids: Optional[List[str]] = None,
        public_ip: bool = False,
    ) -> List[str]:
        """
        Subnets eligible for a launch.

        A subnet qualifies when it is available, lies in the VPC (and zone and
        id list, when given), maps public IPs exactly as ``public_ip`` asks and
        still has at least one free address.

        Raises:
            NoEligibleSubnetError: If nothing qualifies
        """
        if not vpc_id and not subnet_ids:
            raise NoEligibleSubnetError("cannot determine subnet: no VPC or subnet ids configured")

        filters = [{"Name": "state", "Values": [SUBNET_STATE_AVAILABLE]}]
        if vpc_id:
            filters.append({"Name": "vpc-id", "Values": [vpc_id]})
        if availability_zone:
            filters.append({"Name": "availability-zone", "Values": [availability_zone]})
        if subnet_ids:
            filters.append({"Name": "subnet-id", "Values": list(subnet_ids)})

        resp = self._call(ctx, "describe_subnets", Filters=filters)
        eligible = []
        for subnet in resp.get("Subnets", []):
            if bool(subnet.get("MapPublicIpOnLaunch", False)) != public_ip:
                continue
            if int(subnet.get("AvailableIpAddressCount", 0)) < 1:
                continue
            eligible.append(subnet["SubnetId"])
        if not eligible:
            raise NoEligibleSubnetError(f"cannot determine subnet from VPC: {vpc_id!r}")
        return eligible

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------
    def launch(
        self,
        ctx: Context,
        spec: AWSMachineSpec,
        user_data: str,
        client_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Launch one instance from an AWSMachine template.

        Args:
            ctx: Invocation context
            spec: Template fields of the AWSMachine
            user_data: Base64 encoded (gzipped) bootstrap data
            client_token: Idempotency token; a retried launch with the same
                token returns the original instance

        Returns:
            The EC2 instance description
        """
        params: Dict[str, Any] = {
            "ImageId": spec.ami,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": user_data,
            "BlockDeviceMappings": _block_device_mappings(spec),
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": _tags(spec.tags)},
            ],
        }
        if spec.key_name:
            params["KeyName"] = spec.key_name
        if spec.iam_instance_profile:
            if spec.iam_instance_profile.startswith("arn"):
                params["IamInstanceProfile"] = {"Arn": spec.iam_instance_profile}
            else:
                params["IamInstanceProfile"] = {"Name": spec.iam_instance_profile}
        if client_token:
            params["ClientToken"] = client_token

        group_ids = list(spec.security_group_ids)
        group_ids.extend(self.resolve_security_groups(ctx, spec.security_group_names))
        if group_ids:
            params["SecurityGroupIds"] = group_ids

        subnets = self.resolve_subnets(
            ctx,
            spec.vpc_id,
            availability_zone=spec.availability_zone,
            subnet_ids=spec.subnet_ids,
            public_ip=spec.public_ip,
        )
        params["SubnetId"] = pick_subnet(subnets, self.rng)
        if spec.availability_zone:
            params["Placement"] = {"AvailabilityZone": spec.availability_zone}

        resp = self._call(ctx, "run_instances", **params)
        instances = resp.get("Instances") or []
        if not instances:
            raise RuntimeError("no instances returned from RunInstances")
        instance = instances[0]
        logger.info(f"Launched instance {instance.get('InstanceId')} in subnet {params['SubnetId']}")
        return instance

    def describe(self, ctx: Context, instance_id: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Return ``(instance, exists)``. Not found is ``(None, False)``, not an error."""
        try:
            resp = self._call(ctx, "describe_instances", InstanceIds=[instance_id])
        except ClientError as e:
            if _is_not_found(e):
                return None, False
            raise
        reservations = resp.get("Reservations") or []
        if reservations and reservations[0].get("Instances"):
            return reservations[0]["Instances"][0], True
        return None, False

    def describe_status(self, ctx: Context, instance_id: str) -> str:
        """Instance state name; an instance the backend has forgotten is terminated."""
        instance, exists = self.describe(ctx, instance_id)
        if not exists:
            return STATE_TERMINATED
        return instance.get("State", {}).get("Name", "")

    def terminate(self, ctx: Context, instance_id: str) -> None:
        try:
            self._call(ctx, "terminate_instances", InstanceIds=[instance_id])
        except ClientError as e:
            if _is_not_found(e):
                logger.info(f"Instance {instance_id} already gone")
                return
            raise


class EC2ClientFactory:
    """
    Builds region-scoped EC2 clients.

    Clients on the default credential chain are cached per region; clients
    carrying per-machine credentials are built fresh. All clients for a
    region share that region's token bucket.
    """

    def __init__(
        self,
        limiters: Optional[LimiterRegistry] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.limiters = limiters or LimiterRegistry()
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.rng = rng or random.Random()
        self._cache: Dict[str, EC2Client] = {}
        self._lock = threading.Lock()

    def for_region(self, region: str, credentials: Optional[Credentials] = None) -> EC2Client:
        if credentials is None:
            with self._lock:
                cached = self._cache.get(region)
                if cached is not None:
                    return cached
        client = EC2Client(
            region,
            credentials=credentials,
            limiter=self.limiters.get(region),
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            rng=self.rng,
        )
        if credentials is None:
            with self._lock:
                self._cache.setdefault(region, client)
        return client
