"""AWSInfrastructureProvider reconciler: publishes the configuration schema."""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from awsprovider.context import Context
from awsprovider.controllers.result import Request, Result
from awsprovider.schema import render_schema
from awsprovider.types import (
    AWS_INFRA_PROVIDER_KIND,
    INFRA_PROVIDER_KIND,
    MACHINE_GROUP,
)

logger = logging.getLogger(__name__)

SCHEMA_SECRET_NAME = "config-schema"
SCHEMA_KEY = "schema"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _owner(metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for ref in metadata.get("ownerReferences") or []:
        group = ref.get("apiVersion", "").split("/", 1)[0]
        if ref.get("kind") == INFRA_PROVIDER_KIND and group == MACHINE_GROUP:
            return ref
    return None


class ProviderReconciler:
    """Writes the AWSMachine form schema into the ``config-schema`` secret."""

    name = "awsinfrastructureprovider"

    def __init__(self, kube) -> None:
        self.kube = kube

    def reconcile(self, ctx: Context, req: Request) -> Result:
        ip = self.kube.get_aws_infra_provider(req.namespace, req.name)
        if ip is None:
            return Result()
        metadata = ip.get("metadata") or {}

        owner_ref = _owner(metadata)
        owner = self.kube.get_infra_provider(req.namespace, owner_ref["name"]) if owner_ref else None
        if owner is None:
            logger.info(f"AWSInfrastructureProvider {req.key}: InfrastructureProvider controller has not yet set OwnerRef")
            return Result()

        existing = self.kube.get_secret(req.namespace, SCHEMA_SECRET_NAME)
        status = {"ready": existing is not None, "lastUpdated": _now()}
        try:
            ctx.check()
            self.publish(req.namespace, ip, existing)
            status["ready"] = True
        finally:
            try:
                self.kube.patch_aws_infra_provider_status(req.namespace, req.name, {"status": status})
            except Exception as e:
                logger.error(f"Failed to update provider status for {req.key}: {e}")
        return Result()

    def publish(self, namespace: str, ip: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> None:
        metadata = ip["metadata"]
        region = (ip.get("spec") or {}).get("region")
        payload = json.dumps(render_schema(region), separators=(",", ":")).encode("utf-8")
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": SCHEMA_SECRET_NAME,
                "namespace": namespace,
                "ownerReferences": [{
                    "apiVersion": ip.get("apiVersion", ""),
                    "kind": AWS_INFRA_PROVIDER_KIND,
                    "name": metadata["name"],
                    "uid": metadata.get("uid", ""),
                    "controller": True,
                    "blockOwnerDeletion": True,
                }],
            },
            "data": {SCHEMA_KEY: base64.b64encode(payload).decode("ascii")},
        }
        if existing is None:
            self.kube.create_secret(namespace, body)
            logger.info(f"Created schema secret {namespace}/{SCHEMA_SECRET_NAME}")
            return
        body["metadata"]["resourceVersion"] = (existing.get("metadata") or {}).get("resourceVersion")
        self.kube.replace_secret(namespace, SCHEMA_SECRET_NAME, body)
        logger.debug(f"Updated schema secret {namespace}/{SCHEMA_SECRET_NAME}")
