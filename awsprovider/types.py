"""Records for the resources the controllers read and write.

Each record converts to and from the JSON shape the Kubernetes API uses.
Empty optional fields are dropped on output, matching ``omitempty``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


INFRA_GROUP = "infrastructure.crit.sh"
INFRA_VERSION = "v1alpha1"
INFRA_API_VERSION = f"{INFRA_GROUP}/{INFRA_VERSION}"

MACHINE_GROUP = "machine.crit.sh"
MACHINE_VERSION = "v1alpha1"
MACHINE_API_VERSION = f"{MACHINE_GROUP}/{MACHINE_VERSION}"

AWS_MACHINE_KIND = "AWSMachine"
AWS_MACHINE_PLURAL = "awsmachines"
AWS_INFRA_PROVIDER_KIND = "AWSInfrastructureProvider"
AWS_INFRA_PROVIDER_PLURAL = "awsinfrastructureproviders"

MACHINE_KIND = "Machine"
MACHINE_PLURAL = "machines"
CONFIG_KIND = "Config"
CONFIG_PLURAL = "configs"
INFRA_PROVIDER_KIND = "InfrastructureProvider"
INFRA_PROVIDER_PLURAL = "infrastructureproviders"

MACHINE_FINALIZER = "awsmachine.infrastructure.crit.sh"

NAMESPACE_SYSTEM = "kube-system"

# Address types
INTERNAL_DNS = "InternalDNS"
INTERNAL_IP = "InternalIP"
EXTERNAL_DNS = "ExternalDNS"
EXTERNAL_IP = "ExternalIP"


def _group_of(api_version: str) -> str:
    return api_version.split("/", 1)[0] if "/" in api_version else ""


@dataclass
class ObjectReference:
    """Reference to another object, serialized like corev1.ObjectReference."""
    kind: str = ""
    name: str = ""
    namespace: str = ""
    api_version: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ObjectReference"]:
        if not data:
            return None
        return cls(
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            api_version=data.get("apiVersion", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.kind:
            out["kind"] = self.kind
        if self.namespace:
            out["namespace"] = self.namespace
        if self.name:
            out["name"] = self.name
        if self.api_version:
            out["apiVersion"] = self.api_version
        return out

    @property
    def group(self) -> str:
        return _group_of(self.api_version)


@dataclass
class MachineAddress:
    type: str
    address: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "address": self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MachineAddress":
        return cls(type=data.get("type", ""), address=data.get("address", ""))


@dataclass
class BlockDevice:
    device_name: str = ""
    volume_size: int = 0
    volume_type: str = ""
    encrypted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockDevice":
        return cls(
            device_name=data.get("deviceName", ""),
            volume_size=int(data.get("volumeSize", 0) or 0),
            volume_type=data.get("volumeType", ""),
            encrypted=bool(data.get("encrypted", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.device_name:
            out["deviceName"] = self.device_name
        if self.volume_size:
            out["volumeSize"] = self.volume_size
        if self.volume_type:
            out["volumeType"] = self.volume_type
        if self.encrypted:
            out["encrypted"] = True
        return out


@dataclass
class AWSMachineSpec:
    provider_id: Optional[str] = None
    ami: str = ""
    block_devices: List[BlockDevice] = field(default_factory=list)
    instance_type: str = ""
    iam_instance_profile: str = ""
    key_name: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    security_group_ids: List[str] = field(default_factory=list)
    security_group_names: List[str] = field(default_factory=list)
    availability_zone: str = ""
    region: str = ""
    subnet_ids: List[str] = field(default_factory=list)
    public_ip: bool = False
    vpc_id: str = ""
    secret_ref: Optional[ObjectReference] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AWSMachineSpec":
        data = data or {}
        return cls(
            provider_id=data.get("providerID") or None,
            ami=data.get("ami", ""),
            block_devices=[BlockDevice.from_dict(b) for b in data.get("blockDevices") or []],
            instance_type=data.get("instanceType", ""),
            iam_instance_profile=data.get("iamInstanceProfile", ""),
            key_name=data.get("keyName", ""),
            tags=dict(data.get("tags") or {}),
            security_group_ids=list(data.get("securityGroupIDs") or []),
            security_group_names=list(data.get("securityGroupNames") or []),
            availability_zone=data.get("availabilityZone", ""),
            region=data.get("region", ""),
            subnet_ids=list(data.get("subnetIDs") or []),
            public_ip=bool(data.get("publicIP", False)),
            vpc_id=data.get("vpcID", ""),
            secret_ref=ObjectReference.from_dict(data.get("secretRef")),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.provider_id:
            out["providerID"] = self.provider_id
        if self.ami:
            out["ami"] = self.ami
        if self.block_devices:
            out["blockDevices"] = [b.to_dict() for b in self.block_devices]
        if self.instance_type:
            out["instanceType"] = self.instance_type
        if self.iam_instance_profile:
            out["iamInstanceProfile"] = self.iam_instance_profile
        if self.key_name:
            out["keyName"] = self.key_name
        if self.tags:
            out["tags"] = dict(self.tags)
        if self.security_group_ids:
            out["securityGroupIDs"] = list(self.security_group_ids)
        if self.security_group_names:
            out["securityGroupNames"] = list(self.security_group_names)
        if self.availability_zone:
            out["availabilityZone"] = self.availability_zone
        if self.region:
            out["region"] = self.region
        if self.subnet_ids:
            out["subnetIDs"] = list(self.subnet_ids)
        if self.public_ip:
            out["publicIP"] = True
        if self.vpc_id:
            out["vpcID"] = self.vpc_id
        if self.secret_ref is not None:
            out["secretRef"] = self.secret_ref.to_dict()
        return out


@dataclass
class AWSMachineStatus:
    ready: bool = False
    addresses: List[MachineAddress] = field(default_factory=list)
    instance_state: str = ""
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AWSMachineStatus":
        data = data or {}
        return cls(
            ready=bool(data.get("ready", False)),
            addresses=[MachineAddress.from_dict(a) for a in data.get("addresses") or []],
            instance_state=data.get("instanceState", ""),
            failure_reason=data.get("failureReason"),
            failure_message=data.get("failureMessage"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ready": self.ready}
        if self.addresses:
            out["addresses"] = [a.to_dict() for a in self.addresses]
        if self.instance_state:
            out["instanceState"] = self.instance_state
        if self.failure_reason is not None:
            out["failureReason"] = self.failure_reason
        if self.failure_message is not None:
            out["failureMessage"] = self.failure_message
        return out

    def set_failure(self, reason: str, message: str) -> None:
        self.failure_reason = reason
        self.failure_message = message

    @property
    def failed(self) -> bool:
        return self.failure_reason is not None or self.failure_message is not None


@dataclass
class AWSMachine:
    """The cloud-specific machine record tracking one EC2 instance."""
    metadata: Dict[str, Any] = field(default_factory=dict)
    spec: AWSMachineSpec = field(default_factory=AWSMachineSpec)
    status: AWSMachineStatus = field(default_factory=AWSMachineStatus)
    api_version: str = INFRA_API_VERSION
    kind: str = AWS_MACHINE_KIND

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AWSMachine":
        return cls(
            metadata=copy.deepcopy(data.get("metadata") or {}),
            spec=AWSMachineSpec.from_dict(data.get("spec")),
            status=AWSMachineStatus.from_dict(data.get("status")),
            api_version=data.get("apiVersion", INFRA_API_VERSION),
            kind=data.get("kind", AWS_MACHINE_KIND),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": copy.deepcopy(self.metadata),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def deleting(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if not self.has_finalizer(finalizer):
            self.metadata["finalizers"] = self.finalizers + [finalizer]

    def remove_finalizer(self, finalizer: str) -> None:
        if self.has_finalizer(finalizer):
            self.metadata["finalizers"] = [f for f in self.finalizers if f != finalizer]

    def owner_reference(self, kind: str, group: str) -> Optional[ObjectReference]:
        for ref in self.metadata.get("ownerReferences") or []:
            if ref.get("kind") == kind and _group_of(ref.get("apiVersion", "")) == group:
                return ObjectReference(
                    kind=kind,
                    name=ref.get("name", ""),
                    namespace=self.namespace,
                    api_version=ref.get("apiVersion", ""),
                )
        return None

    def reference(self) -> ObjectReference:
        return ObjectReference(
            kind=AWS_MACHINE_KIND,
            name=self.name,
            namespace=self.namespace,
            api_version=self.api_version,
        )


@dataclass
class Machine:
    """The cluster-level machine record owning an AWSMachine."""
    metadata: Dict[str, Any] = field(default_factory=dict)
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    api_version: str = MACHINE_API_VERSION
    kind: str = MACHINE_KIND

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Machine":
        return cls(
            metadata=copy.deepcopy(data.get("metadata") or {}),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=copy.deepcopy(data.get("status") or {}),
            api_version=data.get("apiVersion", MACHINE_API_VERSION),
            kind=data.get("kind", MACHINE_KIND),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": copy.deepcopy(self.metadata),
            "spec": copy.deepcopy(self.spec),
            "status": copy.deepcopy(self.status),
        }

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def config_ref(self) -> Optional[ObjectReference]:
        return ObjectReference.from_dict(self.spec.get("configRef"))

    @property
    def infrastructure_ref(self) -> Optional[ObjectReference]:
        return ObjectReference.from_dict(self.spec.get("infrastructureRef"))

    @infrastructure_ref.setter
    def infrastructure_ref(self, ref: ObjectReference) -> None:
        self.spec["infrastructureRef"] = ref.to_dict()

    def set_failure(self, reason: str, message: str) -> None:
        self.status["failureReason"] = reason
        self.status["failureMessage"] = message


@dataclass
class BootstrapConfig:
    """Readiness view of a machine.crit.sh Config."""
    name: str
    namespace: str
    ready: bool = False
    data_secret_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BootstrapConfig":
        metadata = data.get("metadata") or {}
        status = data.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            ready=bool(status.get("ready", False)),
            data_secret_name=status.get("dataSecretName"),
        )
