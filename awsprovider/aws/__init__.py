"""AWS backend adapters."""

from awsprovider.aws.ec2 import (
    Credentials,
    EC2Client,
    EC2ClientFactory,
    instance_addresses,
    pick_subnet,
)

__all__ = [
    "Credentials",
    "EC2Client",
    "EC2ClientFactory",
    "instance_addresses",
    "pick_subnet",
]
