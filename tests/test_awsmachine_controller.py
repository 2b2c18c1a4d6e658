import base64
import gzip

import pytest
from botocore.exceptions import ClientError

from awsprovider.aws.ec2 import Credentials
from awsprovider.context import Context, background
from awsprovider.controllers.awsmachine import (
    AWSMachineReconciler,
    encode_user_data,
    resolve_region,
)
from awsprovider.controllers.result import Request, Result
from awsprovider.errors import CancelledError, MissingBootstrapDataError, RegionNotFoundError
from awsprovider.types import AWSMachine, MACHINE_FINALIZER

from conftest import instance, reservations


def not_found_error(op="DescribeInstances"):
    return ClientError({"Error": {"Code": "InvalidInstanceID.NotFound", "Message": "gone"}}, op)


@pytest.fixture
def reconciler(kube, ec2):
    return AWSMachineReconciler(kube, ec2, region_lookup=lambda: None)


def run(reconciler, key):
    namespace, name = key
    return reconciler.reconcile(background(), Request(name=name, namespace=namespace))


def stored(kube, key):
    return AWSMachine.from_dict(kube.aws_machines[key])


def mark_deleting(kube, key, provider_id="aws:///us-east-1a/i-0123456789abcdef0"):
    obj = kube.aws_machines[key]
    obj["metadata"]["deletionTimestamp"] = "2026-10-18T00:00:00Z"
    obj["metadata"]["finalizers"] = [MACHINE_FINALIZER]
    if provider_id:
        obj["spec"]["providerID"] = provider_id


def test_provisioning_launches_and_records_identity(kube, boto, reconciler, owned_machine, has_finalizer):
    result = run(reconciler, owned_machine)

    assert result == Result()
    am = stored(kube, owned_machine)
    assert am.spec.provider_id == "aws:///us-east-1a/i-0123456789abcdef0"
    assert am.status.ready is True
    assert am.status.addresses
    assert am.status.instance_state == "running"
    assert has_finalizer(owned_machine)

    boto.run_instances.assert_called_once()
    params = boto.run_instances.call_args.kwargs
    assert params["ClientToken"] == am.uid
    assert params["SubnetId"] == "subnet-a"
    assert gzip.decompress(base64.b64decode(params["UserData"])) == b"#cloud-config\n"


def test_provisioned_machine_is_never_relaunched(kube, boto, reconciler, owned_machine):
    run(reconciler, owned_machine)
    first = stored(kube, owned_machine).spec.provider_id

    run(reconciler, owned_machine)
    run(reconciler, owned_machine)

    assert boto.run_instances.call_count == 1
    assert stored(kube, owned_machine).spec.provider_id == first


def test_config_not_ready_polls_without_backend_calls(kube, boto, reconciler, owned_machine):
    kube.configs[("default", "worker-0-config")]["status"]["ready"] = False

    result = run(reconciler, owned_machine)

    assert result == Result(requeue_after=5.0)
    assert boto.method_calls == []


def test_missing_owner_is_a_no_op(kube, boto, reconciler, owned_machine, has_finalizer):
    del kube.aws_machines[owned_machine]["metadata"]["ownerReferences"]

    result = run(reconciler, owned_machine)

    assert result == Result()
    assert boto.method_calls == []
    assert has_finalizer(owned_machine)


def test_failed_machine_is_left_alone(kube, boto, reconciler, owned_machine):
    kube.aws_machines[owned_machine]["status"]["failureReason"] = "CreateError"
    kube.aws_machines[owned_machine]["status"]["failureMessage"] = "boom"

    assert run(reconciler, owned_machine) == Result()
    assert boto.method_calls == []


def test_missing_cloud_config_key_fails(kube, reconciler, owned_machine):
    kube.add_secret("default", "worker-0-bootstrap", {"other": b"x"})

    with pytest.raises(MissingBootstrapDataError):
        run(reconciler, owned_machine)


def test_launch_failure_marks_owner_and_persists_finalizer(kube, boto, reconciler, owned_machine, has_finalizer):
    boto.run_instances.side_effect = ClientError(
        {"Error": {"Code": "InsufficientInstanceCapacity", "Message": "no capacity"}}, "RunInstances"
    )

    with pytest.raises(ClientError):
        run(reconciler, owned_machine)

    machine = kube.machines[("default", "worker-0")]
    assert machine["status"]["failureReason"] == "CreateError"
    assert "no capacity" in machine["status"]["failureMessage"]
    assert has_finalizer(owned_machine)
    assert stored(kube, owned_machine).spec.provider_id is None


def cancelled():
    ctx = Context()
    ctx.cancel()
    return ctx


@pytest.mark.parametrize("make_ctx", [cancelled, lambda: Context(timeout=0.0)], ids=["cancelled", "deadline"])
def test_cancelled_launch_leaves_owner_untouched(kube, boto, reconciler, owned_machine, has_finalizer, make_ctx):
    namespace, name = owned_machine

    with pytest.raises(CancelledError):
        reconciler.reconcile(make_ctx(), Request(name=name, namespace=namespace))

    boto.run_instances.assert_not_called()
    assert kube.machines[("default", "worker-0")]["status"] == {}
    assert kube.called("patch_machine_status") == []
    am = stored(kube, owned_machine)
    assert not am.status.failed
    assert am.spec.provider_id is None
    assert has_finalizer(owned_machine)


def test_no_eligible_subnet_is_terminal(kube, boto, reconciler, owned_machine):
    boto.describe_subnets.return_value = {
        "Subnets": [{"SubnetId": "subnet-p", "MapPublicIpOnLaunch": True, "AvailableIpAddressCount": 5}]
    }

    result = run(reconciler, owned_machine)

    assert result == Result()
    am = stored(kube, owned_machine)
    assert am.status.failure_reason == "InvalidConfiguration"
    assert kube.machines[("default", "worker-0")]["status"]["failureReason"] == "CreateError"
    boto.run_instances.assert_not_called()


def test_static_credentials_need_both_keys(kube, ec2, reconciler, owned_machine):
    kube.aws_machines[owned_machine]["spec"]["secretRef"] = {"name": "aws-creds"}
    kube.add_secret("default", "aws-creds", {"AWS_ACCESS_KEY_ID": b"AKIA1", "AWS_SECRET_ACCESS_KEY": b"s3cr3t"})

    run(reconciler, owned_machine)

    assert ec2.requests[0] == ("us-east-1", Credentials("AKIA1", "s3cr3t"))


def test_partial_credentials_fall_back_to_default_chain(kube, ec2, reconciler, owned_machine):
    kube.aws_machines[owned_machine]["spec"]["secretRef"] = {"name": "aws-creds"}
    kube.add_secret("default", "aws-creds", {"AWS_ACCESS_KEY_ID": b"AKIA1"})

    run(reconciler, owned_machine)

    assert ec2.requests[0] == ("us-east-1", None)
    assert stored(kube, owned_machine).spec.provider_id


def test_delete_running_instance_terminates_and_keeps_finalizer(kube, boto, reconciler, owned_machine, has_finalizer):
    mark_deleting(kube, owned_machine)
    boto.describe_instances.return_value = reservations(instance(state="running"))

    result = run(reconciler, owned_machine)

    assert result == Result(requeue_after=10.0)
    boto.terminate_instances.assert_called_once_with(InstanceIds=["i-0123456789abcdef0"])
    assert has_finalizer(owned_machine)


@pytest.mark.parametrize("state", ["pending", "stopping", "shutting-down"])
def test_delete_waits_while_instance_is_in_transition(kube, boto, reconciler, owned_machine, has_finalizer, state):
    mark_deleting(kube, owned_machine)
    boto.describe_instances.return_value = reservations(instance(state=state))

    assert run(reconciler, owned_machine) == Result(requeue_after=10.0)
    boto.terminate_instances.assert_not_called()
    assert has_finalizer(owned_machine)


def test_delete_terminated_instance_removes_finalizer(kube, boto, reconciler, owned_machine):
    mark_deleting(kube, owned_machine)
    boto.describe_instances.return_value = reservations(instance(state="terminated"))

    assert run(reconciler, owned_machine) == Result()
    boto.terminate_instances.assert_not_called()
    assert owned_machine not in kube.aws_machines


def test_delete_treats_vanished_instance_as_terminated(kube, boto, reconciler, owned_machine):
    mark_deleting(kube, owned_machine)
    boto.describe_instances.side_effect = not_found_error()

    assert run(reconciler, owned_machine) == Result()
    assert owned_machine not in kube.aws_machines


def test_delete_unknown_state_is_terminal(kube, boto, reconciler, owned_machine, has_finalizer):
    mark_deleting(kube, owned_machine)
    boto.describe_instances.return_value = reservations(instance(state="hibernating"))

    result = run(reconciler, owned_machine)

    assert result == Result()
    am = stored(kube, owned_machine)
    assert am.status.failure_reason == "DeleteError"
    assert "hibernating" in am.status.failure_message
    assert has_finalizer(owned_machine)
    boto.terminate_instances.assert_not_called()


def test_delete_without_instance_removes_finalizer(kube, boto, reconciler, owned_machine):
    mark_deleting(kube, owned_machine, provider_id=None)

    assert run(reconciler, owned_machine) == Result()
    assert owned_machine not in kube.aws_machines
    assert boto.method_calls == []


def test_missing_record_is_done(reconciler):
    assert run(reconciler, ("default", "nope")) == Result()


def test_resolve_region_order():
    am = AWSMachine.from_dict({"spec": {"region": "eu-west-1", "availabilityZone": "us-west-2b"}})
    assert resolve_region(am, "ap-south-1", lambda: "ca-central-1") == "eu-west-1"

    am = AWSMachine.from_dict({"spec": {"availabilityZone": "us-west-2b"}})
    assert resolve_region(am, "ap-south-1", lambda: "ca-central-1") == "us-west-2"

    am = AWSMachine.from_dict({"spec": {}})
    assert resolve_region(am, "ap-south-1", lambda: "ca-central-1") == "ap-south-1"
    assert resolve_region(am, None, lambda: "ca-central-1") == "ca-central-1"

    with pytest.raises(RegionNotFoundError):
        resolve_region(am, None, lambda: None)


def test_encode_user_data_is_deterministic():
    assert encode_user_data(b"hello") == encode_user_data(b"hello")
    assert gzip.decompress(base64.b64decode(encode_user_data(b"hello"))) == b"hello"
