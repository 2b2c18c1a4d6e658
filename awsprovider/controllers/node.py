"""Node linking reconciler.

Backfills AWSMachine records for nodes that joined the cluster without going
through the machine API, and keeps the node's link annotations and the owning
Machine's infrastructure reference consistent with each other.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from kubernetes.client.exceptions import ApiException

from awsprovider.aws.ec2 import EC2ClientFactory, instance_addresses
from awsprovider.context import Context
from awsprovider.controllers.result import Request, Result
from awsprovider.linkage import NodeLinks, aws_machine_link
from awsprovider.providerid import parse_provider_id
from awsprovider.types import (
    AWS_MACHINE_KIND,
    NAMESPACE_SYSTEM,
    AWSMachine,
    AWSMachineSpec,
    AWSMachineStatus,
    Machine,
    ObjectReference,
)

logger = logging.getLogger(__name__)


class NodeReconciler:
    """Creates and links AWSMachine records for nodes."""

    name = "node"

    def __init__(self, kube, ec2: EC2ClientFactory) -> None:
        self.kube = kube
        self.ec2 = ec2

    def reconcile(self, ctx: Context, req: Request) -> Result:
        node = self.kube.get_node(req.name)
        if node is None:
            return Result()

        node_name = node["metadata"]["name"]
        provider_id = (node.get("spec") or {}).get("providerID", "")
        links = NodeLinks((node.get("metadata") or {}).get("annotations"))

        aws_ref: Optional[ObjectReference] = None
        if not links.has_aws_machine():
            if not provider_id:
                logger.debug(f"Node {node_name} has no providerID yet")
                return Result()
            logger.info(f"Node {node_name} has no AWSMachine annotation")
            aws_ref = self.ensure_aws_machine(ctx, node_name, provider_id)
            if aws_ref is None:
                return Result()
        else:
            aws_ref = links.aws_machine

        if links.has_machine():
            machine_ref = links.machine
            am = self.kube.get_aws_machine(aws_ref.namespace or NAMESPACE_SYSTEM, aws_ref.name)
            if am is None:
                logger.warning(f"Node {node_name} links AWSMachine {aws_ref.name!r} which does not exist")
                return Result(requeue=True)
            return self.ensure_machine_infra_ref(AWSMachine.from_dict(am), machine_ref)
        return Result()

    def ensure_aws_machine(self, ctx: Context, node_name: str, provider_id: str) -> Optional[ObjectReference]:
        """
        Find or create the AWSMachine describing a node and annotate the node.

        Returns:
            Reference to the linked AWSMachine, or None when the instance is gone

        Raises:
            InvalidFormatError: If the node's providerID is not canonical
        """
        for item in self.kube.list_aws_machines():
            am = AWSMachine.from_dict(item)
            if am.spec.provider_id == provider_id:
                logger.debug(f"Node {node_name} already has AWSMachine {am.key}, adding annotation")
                return self.set_aws_machine_annotation(node_name, am)

        pid = parse_provider_id(provider_id)
        client = self.ec2.for_region(pid.region)
        instance, exists = client.describe(ctx, pid.instance_id)
        if not exists:
            logger.warning(f"Node {node_name}: instance {pid.instance_id} not found, not creating AWSMachine")
            return None

        am = AWSMachine(
            metadata={"name": node_name, "namespace": NAMESPACE_SYSTEM},
            spec=AWSMachineSpec(provider_id=provider_id),
            status=AWSMachineStatus(addresses=instance_addresses(instance)),
        )
        created, adopted = self._create(am)
        if not adopted:
            self.kube.patch_aws_machine_status(
                created.namespace, created.name, {"status": am.status.to_dict()},
            )
            logger.info(f"Created AWSMachine {created.key} for node {node_name}")
        return self.set_aws_machine_annotation(node_name, created)

    def _create(self, am: AWSMachine) -> Tuple[AWSMachine, bool]:
        """
        Create ``am``, or adopt a same-named record on conflict.

        A conflicting record is adopted only when it describes the same
        instance or none yet; in the latter case its providerID is set.

        Returns:
            The stored record and whether it was adopted

        Raises:
            ApiException: On a conflict with a record for another instance
        """
        body = am.to_dict()
        body.pop("status", None)
        try:
            return AWSMachine.from_dict(self.kube.create_aws_machine(body)), False
        except ApiException as e:
            if e.status != 409:
                raise
            raw = self.kube.get_aws_machine(am.namespace, am.name)
            if raw is None:
                raise RuntimeError(f"AWSMachine {am.key} conflicted on create but cannot be read") from e
            existing = AWSMachine.from_dict(raw)
            if existing.spec.provider_id and existing.spec.provider_id != am.spec.provider_id:
                logger.error(
                    f"AWSMachine {am.key} already exists for {existing.spec.provider_id}, "
                    f"not linking it to {am.spec.provider_id}"
                )
                raise

        logger.info(f"AWSMachine {am.key} already exists, adopting it")
        if not existing.spec.provider_id:
            existing = AWSMachine.from_dict(self.kube.patch_aws_machine(
                am.namespace, am.name, {"spec": {"providerID": am.spec.provider_id}},
            ))
        return existing, True

    def set_aws_machine_annotation(self, node_name: str, am: AWSMachine) -> ObjectReference:
        ref = am.reference()
        self.kube.patch_node_annotations(node_name, aws_machine_link(ref))
        return ref

    def ensure_machine_infra_ref(self, am: AWSMachine, machine_ref: ObjectReference) -> Result:
        """Point the Machine's infrastructureRef at ``am`` if it points elsewhere."""
        raw: Optional[Dict[str, Any]] = self.kube.get_machine(machine_ref.namespace or NAMESPACE_SYSTEM, machine_ref.name)
        if raw is None:
            logger.info(f"Machine {machine_ref.name!r} not found yet")
            return Result(requeue=True)
        machine = Machine.from_dict(raw)
        current = machine.infrastructure_ref
        if current is not None and current.kind == AWS_MACHINE_KIND and current.name == am.name:
            return Result()
        machine.infrastructure_ref = am.reference()
        self.kube.replace_machine(machine.to_dict())
        logger.info(f"Machine {machine.name} infrastructureRef set to AWSMachine {am.key}")
        return Result()
