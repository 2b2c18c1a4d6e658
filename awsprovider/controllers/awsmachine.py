"""AWSMachine lifecycle reconciler.

Each invocation walks an ordered list of guards. A guard either handles the
record and returns a :class:`Result`, or returns ``None`` to let the next one
look at it::

    deleting -> failed -> awaiting_owner -> provisioned
             -> awaiting_bootstrap -> provisioning

Whatever the outcome, mutations made to the record are persisted once at
the end through :class:`~awsprovider.patch.PatchHelper`.
"""

from __future__ import annotations

import base64
import gzip
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from awsprovider.aws.ec2 import (
    STATE_PENDING,
    STATE_RUNNING,
    STATE_SHUTTING_DOWN,
    STATE_STOPPED,
    STATE_STOPPING,
    STATE_TERMINATED,
    EC2Client,
    EC2ClientFactory,
    credentials_from_secret,
    instance_addresses,
    lookup_region,
)
from awsprovider.context import Context
from awsprovider.controllers.result import Request, Result
from awsprovider.errors import (
    CREATE_MACHINE_ERROR,
    CancelledError,
    MissingBootstrapDataError,
    RegionNotFoundError,
    RequeueAfterError,
    TerminalError,
    UnknownInstanceStateError,
)
from awsprovider.patch import PatchHelper
from awsprovider.providerid import format_provider_id, parse_provider_id, region_from_zone
from awsprovider.types import (
    MACHINE_FINALIZER,
    MACHINE_GROUP,
    MACHINE_KIND,
    AWSMachine,
    BootstrapConfig,
    Machine,
)

logger = logging.getLogger(__name__)

CLOUD_CONFIG_KEY = "cloud-config"

# Poll interval while the owner's Config is not ready
BOOTSTRAP_POLL_INTERVAL = 5.0
# Poll interval while an instance is on its way down
DELETE_POLL_INTERVAL = 10.0


def encode_user_data(data: bytes) -> str:
    """Gzip then base64 bootstrap data for the EC2 user-data field."""
    return base64.b64encode(gzip.compress(data, mtime=0)).decode("ascii")


def resolve_region(
    machine: AWSMachine,
    default_region: Optional[str] = None,
    lookup: Callable[[], Optional[str]] = lookup_region,
) -> str:
    """
    Region an AWSMachine should be launched in.

    Tried in order: ``spec.region``, the region of ``spec.availabilityZone``,
    ``default_region``, then instance metadata.

    Raises:
        RegionNotFoundError: If none of the sources yield a region
    """
    if machine.spec.region:
        return machine.spec.region
    if machine.spec.availability_zone:
        region = region_from_zone(machine.spec.availability_zone)
        if region:
            return region
    if default_region:
        return default_region
    region = lookup()
    if region:
        return region
    raise RegionNotFoundError(f"cannot determine region for AWSMachine {machine.key!r}")


@dataclass
class Scope:
    """State gathered while walking the guards of one invocation."""
    ctx: Context
    aws_machine: AWSMachine
    machine: Optional[Machine] = None
    config: Optional[BootstrapConfig] = None


class AWSMachineReconciler:
    """
    Drives AWSMachine records from intent to a running instance and back.

    Args:
        kube: Kubernetes client wrapper
        ec2: Factory for region-scoped EC2 clients
        default_region: Region used when the record names none
        region_lookup: Last-resort region source (instance metadata)
    """

    name = "awsmachine"

    def __init__(
        self,
        kube,
        ec2: EC2ClientFactory,
        default_region: Optional[str] = None,
        region_lookup: Callable[[], Optional[str]] = lookup_region,
    ) -> None:
        self.kube = kube
        self.ec2 = ec2
        self.default_region = default_region
        self.region_lookup = region_lookup

    @property
    def guards(self) -> List[Callable[[Scope], Optional[Result]]]:
        return [
            self.reconcile_deleting,
            self.reconcile_failed,
            self.reconcile_awaiting_owner,
            self.reconcile_provisioned,
            self.reconcile_awaiting_bootstrap,
            self.reconcile_provisioning,
        ]

    def reconcile(self, ctx: Context, req: Request) -> Result:
        raw = self.kube.get_aws_machine(req.namespace, req.name)
        if raw is None:
            return Result()
        am = AWSMachine.from_dict(raw)
        helper = PatchHelper(self.kube, am)
        scope = Scope(ctx=ctx, aws_machine=am)

        try:
            result = self._run_guards(scope)
        except TerminalError as e:
            # A terminal launch error is also recorded here: the failure on
            # the AWSMachine is what stops the next pass from relaunching.
            logger.error(f"AWSMachine {am.key} failed: {e}")
            am.status.set_failure(e.reason, str(e))
            result = Result()
        except RequeueAfterError as e:
            logger.info(f"AWSMachine {am.key}: {e}, requeue in {e.requeue_after}s")
            result = Result(requeue_after=e.requeue_after)
        except Exception:
            self._persist(helper, am, prior_error=True)
            raise

        self._persist(helper, am, prior_error=False)
        return result

    def _persist(self, helper: PatchHelper, am: AWSMachine, prior_error: bool) -> None:
        try:
            helper.patch(am)
        except Exception as e:
            if not prior_error:
                raise
            logger.error(f"Failed to persist AWSMachine {am.key}: {e}")

    def _run_guards(self, scope: Scope) -> Result:
        am = scope.aws_machine
        if not am.deleting:
            am.add_finalizer(MACHINE_FINALIZER)
        for guard in self.guards:
            result = guard(scope)
            if result is not None:
                return result
        return Result()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    def reconcile_deleting(self, scope: Scope) -> Optional[Result]:
        am = scope.aws_machine
        if not am.deleting:
            return None
        if am.spec.provider_id:
            self.delete_instance(scope)
        logger.info(f"AWSMachine {am.key} instance terminated, removing finalizer")
        am.remove_finalizer(MACHINE_FINALIZER)
        return Result()

    def reconcile_failed(self, scope: Scope) -> Optional[Result]:
        status = scope.aws_machine.status
        if not status.failed:
            return None
        logger.info(
            f"AWSMachine {scope.aws_machine.key} has failure reason={status.failure_reason!r} "
            f"message={status.failure_message!r}"
        )
        return Result()

    def reconcile_awaiting_owner(self, scope: Scope) -> Optional[Result]:
        am = scope.aws_machine
        ref = am.owner_reference(MACHINE_KIND, MACHINE_GROUP)
        if ref is not None:
            raw = self.kube.get_machine(am.namespace, ref.name)
            if raw is not None:
                scope.machine = Machine.from_dict(raw)
                return None
        logger.info(f"AWSMachine {am.key}: Machine controller has not yet set OwnerRef")
        return Result()

    def reconcile_provisioned(self, scope: Scope) -> Optional[Result]:
        if not scope.aws_machine.spec.provider_id:
            return None
        logger.debug(f"AWSMachine {scope.aws_machine.key} already has an instance")
        self.refresh_status(scope)
        return Result()

    def reconcile_awaiting_bootstrap(self, scope: Scope) -> Optional[Result]:
        machine = scope.machine
        ref = machine.config_ref
        raw = self.kube.get_config(machine.namespace, ref.name) if ref is not None else None
        if raw is not None:
            scope.config = BootstrapConfig.from_dict(raw)
            if scope.config.ready:
                return None
        logger.info(f"AWSMachine {scope.aws_machine.key}: bootstrap config not ready")
        return Result(requeue_after=BOOTSTRAP_POLL_INTERVAL)

    def reconcile_provisioning(self, scope: Scope) -> Optional[Result]:
        am = scope.aws_machine
        machine = scope.machine
        user_data = self.bootstrap_data(scope)
        client = self.client_for(scope, resolve_region(am, self.default_region, self.region_lookup))

        try:
            instance = client.launch(scope.ctx, am.spec, encode_user_data(user_data), client_token=am.uid or None)
        except CancelledError:
            # Nothing was launched; the owner stays untouched.
            raise
        except Exception as e:
            logger.error(f"AWSMachine {am.key}: launch failed: {e}")
            machine.set_failure(CREATE_MACHINE_ERROR, str(e))
            self.kube.patch_machine_status(
                machine.namespace,
                machine.name,
                {"status": {"failureReason": CREATE_MACHINE_ERROR, "failureMessage": str(e)}},
            )
            raise

        zone = instance.get("Placement", {}).get("AvailabilityZone", "")
        am.spec.provider_id = format_provider_id(client.region, zone, instance["InstanceId"])
        am.status.addresses = instance_addresses(instance)
        am.status.ready = True
        logger.info(f"AWSMachine {am.key} provisioned as {am.spec.provider_id}")
        self.refresh_status(scope)
        return Result()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def bootstrap_data(self, scope: Scope) -> bytes:
        """
        Rendered bootstrap payload for the owner's Config.

        Raises:
            MissingBootstrapDataError: If the secret or its cloud-config key is missing
        """
        secret_name = scope.config.data_secret_name
        if not secret_name:
            raise MissingBootstrapDataError(f"config {scope.config.name!r} has no data secret")
        data = self.kube.get_secret_data(scope.machine.namespace, secret_name)
        if data is None:
            raise MissingBootstrapDataError(f"secret {secret_name!r} not found")
        if CLOUD_CONFIG_KEY not in data:
            raise MissingBootstrapDataError(f"secret {secret_name!r} missing {CLOUD_CONFIG_KEY}")
        return data[CLOUD_CONFIG_KEY]

    def client_for(self, scope: Scope, region: str) -> EC2Client:
        """EC2 client for ``region``, with the record's static credentials when it references any."""
        am = scope.aws_machine
        credentials = None
        ref = am.spec.secret_ref
        if ref is not None and ref.name:
            data = self.kube.get_secret_data(ref.namespace or am.namespace, ref.name)
            if data is not None:
                credentials = credentials_from_secret(data)
        return self.ec2.for_region(region, credentials)

    def refresh_status(self, scope: Scope) -> None:
        am = scope.aws_machine
        pid = parse_provider_id(am.spec.provider_id)
        client = self.client_for(scope, pid.region)
        am.status.instance_state = client.describe_status(scope.ctx, pid.instance_id)
        if am.status.ready:
            return
        instance, exists = client.describe(scope.ctx, pid.instance_id)
        if not exists:
            logger.warning(f"AWSMachine {am.key}: instance {pid.instance_id} not found")
            return
        am.status.addresses = instance_addresses(instance)
        am.status.ready = True

    def delete_instance(self, scope: Scope) -> None:
        """
        Drive the backing instance to terminated.

        Returns only once the instance is confirmed gone.

        Raises:
            RequeueAfterError: While the instance is still on its way down
            UnknownInstanceStateError: On a state outside the EC2 lifecycle
        """
        am = scope.aws_machine
        pid = parse_provider_id(am.spec.provider_id)
        client = self.client_for(scope, pid.region)
        state = client.describe_status(scope.ctx, pid.instance_id)

        if state in (STATE_PENDING, STATE_STOPPING):
            raise RequeueAfterError(f"instance {pid.instance_id} is {state}, waiting to delete", DELETE_POLL_INTERVAL)
        if state in (STATE_RUNNING, STATE_STOPPED):
            logger.info(f"Terminating instance {pid.instance_id} of AWSMachine {am.key}")
            client.terminate(scope.ctx, pid.instance_id)
            raise RequeueAfterError(f"instance {pid.instance_id} terminating", DELETE_POLL_INTERVAL)
        if state == STATE_SHUTTING_DOWN:
            raise RequeueAfterError(f"instance {pid.instance_id} terminating", DELETE_POLL_INTERVAL)
        if state == STATE_TERMINATED:
            return
        raise UnknownInstanceStateError(f"machine {am.name!r} has unknown state {state!r}")
