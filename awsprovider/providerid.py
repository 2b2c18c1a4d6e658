"""Provider identity codec.

An EC2 instance is identified on the Node and the AWSMachine by a string of
the form ``aws:///<availability-zone>/<instance-id>``. Any scheme and any
leading path are accepted on input and kept, so formatting a parsed identity
gives back the original string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from awsprovider.errors import InvalidFormatError

PROVIDER_ID_RE = re.compile(r"^[^:]+://.*[^/]$")
ZONE_SUFFIX_RE = re.compile(r"[a-z]$")

DEFAULT_SCHEME = "aws"
DEFAULT_PREFIX = "/"


@dataclass(frozen=True)
class ProviderID:
    region: str
    availability_zone: str
    instance_id: str
    scheme: str = DEFAULT_SCHEME
    prefix: str = DEFAULT_PREFIX

    def __str__(self) -> str:
        return format_provider_id(
            self.region,
            self.availability_zone,
            self.instance_id,
            scheme=self.scheme,
            prefix=self.prefix,
        )


def region_from_zone(zone: str) -> str:
    """Strip the trailing zone letter: ``us-east-1a`` -> ``us-east-1``."""
    return ZONE_SUFFIX_RE.sub("", zone)


def parse_provider_id(s: str) -> ProviderID:
    """
    Parse a provider identity string.

    Args:
        s: String such as ``aws:///us-east-1a/i-0123456789abcdef0``

    Returns:
        ProviderID with region derived from the availability zone

    Raises:
        InvalidFormatError: If the string is not in canonical form
    """
    if not s or not PROVIDER_ID_RE.match(s):
        raise InvalidFormatError(f"invalid ProviderID: {s!r}")

    scheme, _, rest = s.partition("://")
    segments = rest.split("/")
    if len(segments) < 2:
        raise InvalidFormatError(f"invalid ProviderID: {s!r}")

    zone, instance_id = segments[-2], segments[-1]
    if not zone or not instance_id:
        raise InvalidFormatError(f"invalid ProviderID: {s!r}")

    # everything in front of "<zone>/<id>", usually just "/"
    prefix = rest[: len(rest) - len(zone) - len(instance_id) - 1]

    return ProviderID(
        region=region_from_zone(zone) or zone,
        availability_zone=zone,
        instance_id=instance_id,
        scheme=scheme,
        prefix=prefix,
    )


def format_provider_id(
    region: str,
    zone: str,
    instance_id: str,
    scheme: str = DEFAULT_SCHEME,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    """Build the provider identity string. Region is implied by the zone."""
    for name, value in (("region", region), ("zone", zone), ("instance id", instance_id)):
        if not value:
            raise ValueError(f"provider id {name} must not be empty")
    return f"{scheme}://{prefix}{zone}/{instance_id}"


def is_valid_provider_id(s: str) -> bool:
    try:
        parse_provider_id(s)
    except InvalidFormatError:
        return False
    return True
