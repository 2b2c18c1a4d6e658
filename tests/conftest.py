import base64
import copy
import random
import sys
import uuid
from pathlib import Path
from unittest.mock import MagicMock

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from kubernetes.client.exceptions import ApiException

from awsprovider.aws.ec2 import EC2Client
from awsprovider.types import (
    INFRA_API_VERSION,
    MACHINE_API_VERSION,
    MACHINE_FINALIZER,
)


def apply_merge_patch(target, patch):
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    out = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            out.pop(key, None)
        else:
            out[key] = apply_merge_patch(out.get(key), value)
    return out


def not_found():
    return ApiException(status=404, reason="Not Found")


class FakeKube:
    """In-memory stand-in for awsprovider.kube.KubeClient."""

    def __init__(self):
        self.aws_machines = {}
        self.machines = {}
        self.configs = {}
        self.secrets = {}
        self.nodes = {}
        self.aws_infra_providers = {}
        self.infra_providers = {}
        self.calls = []
        self._rv = 0

    def _next_rv(self):
        self._rv += 1
        return str(self._rv)

    def _stamp(self, obj):
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = self._next_rv()
        return obj

    # AWSMachine
    def get_aws_machine(self, namespace, name):
        obj = self.aws_machines.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def list_aws_machines(self, namespace=None):
        return [
            copy.deepcopy(o) for (ns, _), o in self.aws_machines.items()
            if namespace is None or ns == namespace
        ]

    def create_aws_machine(self, body):
        self.calls.append(("create_aws_machine", body))
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        if key in self.aws_machines:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = self._stamp(copy.deepcopy(body))
        obj.setdefault("apiVersion", INFRA_API_VERSION)
        obj.setdefault("kind", "AWSMachine")
        self.aws_machines[key] = obj
        return copy.deepcopy(obj)

    def patch_aws_machine(self, namespace, name, patch):
        self.calls.append(("patch_aws_machine", patch))
        obj = self.aws_machines.get((namespace, name))
        if obj is None:
            raise not_found()
        status = obj.get("status")
        updated = apply_merge_patch(obj, {k: v for k, v in patch.items() if k != "status"})
        if status is not None:
            updated["status"] = status
        self._stamp(updated)
        metadata = updated["metadata"]
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            del self.aws_machines[(namespace, name)]
        else:
            self.aws_machines[(namespace, name)] = updated
        return copy.deepcopy(updated)

    def patch_aws_machine_status(self, namespace, name, patch):
        self.calls.append(("patch_aws_machine_status", patch))
        obj = self.aws_machines.get((namespace, name))
        if obj is None:
            raise not_found()
        obj["status"] = apply_merge_patch(obj.get("status") or {}, patch.get("status") or {})
        self._stamp(obj)
        return copy.deepcopy(obj)

    # Machine / Config
    def get_machine(self, namespace, name):
        obj = self.machines.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def replace_machine(self, body):
        self.calls.append(("replace_machine", body))
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        current = self.machines.get(key)
        if current is None:
            raise not_found()
        if body["metadata"].get("resourceVersion") != current["metadata"].get("resourceVersion"):
            raise ApiException(status=409, reason="Conflict")
        obj = copy.deepcopy(body)
        obj["status"] = current.get("status", {})
        self.machines[key] = self._stamp(obj)
        return copy.deepcopy(obj)

    def patch_machine_status(self, namespace, name, patch):
        self.calls.append(("patch_machine_status", patch))
        obj = self.machines.get((namespace, name))
        if obj is None:
            raise not_found()
        obj["status"] = apply_merge_patch(obj.get("status") or {}, patch.get("status") or {})
        return copy.deepcopy(obj)

    def get_config(self, namespace, name):
        obj = self.configs.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    # Providers
    def get_aws_infra_provider(self, namespace, name):
        obj = self.aws_infra_providers.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def patch_aws_infra_provider_status(self, namespace, name, patch):
        self.calls.append(("patch_aws_infra_provider_status", patch))
        obj = self.aws_infra_providers.get((namespace, name))
        if obj is None:
            raise not_found()
        obj["status"] = apply_merge_patch(obj.get("status") or {}, patch.get("status") or {})
        return copy.deepcopy(obj)

    def get_infra_provider(self, namespace, name):
        obj = self.infra_providers.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    # Secrets
    def get_secret(self, namespace, name):
        obj = self.secrets.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def get_secret_data(self, namespace, name):
        secret = self.get_secret(namespace, name)
        if secret is None:
            return None
        return {k: base64.b64decode(v) for k, v in (secret.get("data") or {}).items()}

    def create_secret(self, namespace, body):
        self.calls.append(("create_secret", body))
        key = (namespace, body["metadata"]["name"])
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[key] = self._stamp(copy.deepcopy(body))
        return copy.deepcopy(self.secrets[key])

    def replace_secret(self, namespace, name, body):
        self.calls.append(("replace_secret", body))
        self.secrets[(namespace, name)] = self._stamp(copy.deepcopy(body))
        return copy.deepcopy(self.secrets[(namespace, name)])

    # Nodes
    def get_node(self, name):
        obj = self.nodes.get(name)
        return copy.deepcopy(obj) if obj is not None else None

    def patch_node_annotations(self, name, annotations):
        self.calls.append(("patch_node_annotations", annotations))
        node = self.nodes[name]
        node["metadata"].setdefault("annotations", {}).update(annotations)
        return copy.deepcopy(node)

    # Seeding helpers
    def add_secret(self, namespace, name, data):
        self.secrets[(namespace, name)] = {
            "metadata": {"name": name, "namespace": namespace},
            "data": {k: base64.b64encode(v).decode("ascii") for k, v in data.items()},
        }

    def called(self, name):
        return [args for call, args in self.calls if call == name]


class FakeEC2Factory:
    """Hands out one EC2Client wrapping a MagicMock boto3 client."""

    def __init__(self, boto):
        self.boto = boto
        self.requests = []
        self.client = EC2Client("us-east-1", client=boto, rng=random.Random(7))

    def for_region(self, region, credentials=None):
        self.requests.append((region, credentials))
        self.client.region = region
        return self.client


def instance(instance_id="i-0123456789abcdef0", zone="us-east-1a", state="running", public=False):
    eni = {"PrivateDnsName": "ip-10-0-0-5.ec2.internal", "PrivateIpAddress": "10.0.0.5"}
    if public:
        eni["Association"] = {"PublicDnsName": "ec2-54-1-2-3.compute-1.amazonaws.com", "PublicIp": "54.1.2.3"}
    return {
        "InstanceId": instance_id,
        "Placement": {"AvailabilityZone": zone},
        "State": {"Name": state},
        "NetworkInterfaces": [eni],
    }


def reservations(*instances):
    return {"Reservations": [{"Instances": list(instances)}]} if instances else {"Reservations": []}


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def boto():
    mock = MagicMock()
    mock.describe_subnets.return_value = {
        "Subnets": [
            {"SubnetId": "subnet-a", "MapPublicIpOnLaunch": False, "AvailableIpAddressCount": 10},
        ]
    }
    mock.describe_security_groups.return_value = {"SecurityGroups": []}
    mock.run_instances.return_value = {"Instances": [instance(state="pending")]}
    mock.describe_instances.return_value = reservations(instance())
    return mock


@pytest.fixture
def ec2(boto):
    return FakeEC2Factory(boto)


@pytest.fixture
def owned_machine(kube):
    """An AWSMachine owned by a Machine whose Config is ready with bootstrap data."""
    kube.machines[("default", "worker-0")] = {
        "apiVersion": MACHINE_API_VERSION,
        "kind": "Machine",
        "metadata": {"name": "worker-0", "namespace": "default", "resourceVersion": "1"},
        "spec": {"configRef": {"kind": "Config", "name": "worker-0-config"}},
        "status": {},
    }
    kube.configs[("default", "worker-0-config")] = {
        "metadata": {"name": "worker-0-config", "namespace": "default"},
        "status": {"ready": True, "dataSecretName": "worker-0-bootstrap"},
    }
    kube.add_secret("default", "worker-0-bootstrap", {"cloud-config": b"#cloud-config\n"})
    kube.aws_machines[("default", "worker-0")] = {
        "apiVersion": INFRA_API_VERSION,
        "kind": "AWSMachine",
        "metadata": {
            "name": "worker-0",
            "namespace": "default",
            "uid": "6f1c2d3e-0000-4000-8000-000000000001",
            "ownerReferences": [
                {"apiVersion": MACHINE_API_VERSION, "kind": "Machine", "name": "worker-0", "uid": "m-1"},
            ],
        },
        "spec": {
            "ami": "ami-0abc",
            "instanceType": "t3.medium",
            "region": "us-east-1",
            "vpcID": "vpc-1",
        },
        "status": {"ready": False},
    }
    return ("default", "worker-0")


def finalizers(kube, key):
    obj = kube.aws_machines.get(key)
    if obj is None:
        return None
    return obj["metadata"].get("finalizers", [])


@pytest.fixture
def has_finalizer(kube):
    def check(key):
        return MACHINE_FINALIZER in (finalizers(kube, key) or [])
    return check
