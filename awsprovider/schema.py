"""OpenAPI-style schema for the AWSMachine configuration form."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from awsprovider.types import AWS_MACHINE_KIND, INFRA_API_VERSION

INSTANCE_TYPES = [
    "t3.medium",
    "t3.large",
    "t3.xlarge",
    "m5.large",
    "m5.xlarge",
    "m5.2xlarge",
    "c5.large",
    "c5.xlarge",
    "r5.large",
]

VOLUME_TYPES = ["gp2", "gp3", "io1", "io2", "st1", "sc1", "standard"]


def _required_properties() -> List[Dict[str, Any]]:
    return [
        {
            "id": "instanceType",
            "title": "Instance Type",
            "type": "string",
            "enum": list(INSTANCE_TYPES),
            "description": "EC2 instance type",
            "default": "",
        },
        {
            "id": "ami",
            "title": "Machine Image",
            "type": "string",
            "pattern": "^ami-[0-9a-f]+$",
            "description": "AMI to launch",
            "default": "",
        },
    ]


def render_schema(region: Optional[str] = None) -> Dict[str, Any]:
    """
    Schema describing an AWSMachine as a fill-in form.

    Args:
        region: Region of the provider, used as the default for ``spec.region``
    """
    required = _required_properties()
    props: Dict[str, Any] = {p["id"]: p for p in required}
    props.update({
        "region": {"type": "string", "title": "Region", "default": region or ""},
        "availabilityZone": {"type": "string", "title": "Availability Zone"},
        "vpcID": {"type": "string", "title": "VPC"},
        "subnetIDs": {"type": "array", "title": "Subnets", "items": {"type": "string"}},
        "securityGroupNames": {"type": "array", "title": "Security Groups", "items": {"type": "string"}},
        "keyName": {"type": "string", "title": "SSH Key Pair"},
        "iamInstanceProfile": {"type": "string", "title": "IAM Instance Profile"},
        "publicIP": {"type": "boolean", "title": "Public IP", "default": False},
        "blockDevices": {
            "type": "array",
            "title": "Block Devices",
            "items": {
                "type": "object",
                "properties": {
                    "deviceName": {"type": "string"},
                    "volumeSize": {"type": "integer", "minimum": 1},
                    "volumeType": {"type": "string", "enum": list(VOLUME_TYPES)},
                    "encrypted": {"type": "boolean"},
                },
            },
        },
        "tags": {"type": "object", "title": "Tags", "additionalProperties": {"type": "string"}},
    })
    return {
        "type": "object",
        "title": "AWS Worker Config",
        "properties": {
            "apiVersion": {"type": "string", "default": INFRA_API_VERSION},
            "kind": {"type": "string", "default": AWS_MACHINE_KIND},
            "metadata": {
                "type": "object",
                "title": "Metadata",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
            "spec": {
                "type": "object",
                "properties": props,
                "required": [p["id"] for p in required],
            },
        },
    }
