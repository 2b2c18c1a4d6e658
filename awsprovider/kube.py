"""Thin wrapper over the Kubernetes API used by the controllers.

All reads return plain JSON-shaped dicts. A 404 comes back as ``None``;
every other ``ApiException`` propagates to the caller.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException

from awsprovider.types import (
    AWS_INFRA_PROVIDER_PLURAL,
    AWS_MACHINE_PLURAL,
    CONFIG_PLURAL,
    INFRA_GROUP,
    INFRA_PROVIDER_PLURAL,
    INFRA_VERSION,
    MACHINE_GROUP,
    MACHINE_PLURAL,
    MACHINE_VERSION,
)

logger = logging.getLogger(__name__)


def load_config(kubeconfig: Optional[str] = None) -> None:
    """
    Load cluster credentials into the default client configuration.

    In-cluster config is tried first, then the kubeconfig file.

    Args:
        kubeconfig: Explicit kubeconfig path; skips the in-cluster attempt
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        logger.info(f"Loaded kubeconfig from {kubeconfig}")
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def _none_on_404(fn, *args, **kwargs) -> Optional[Any]:
    try:
        return fn(*args, **kwargs)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


class KubeClient:
    """Typed-by-convention access to the resources the provider touches."""

    def __init__(self, api_client: Optional[ApiClient] = None) -> None:
        self.api_client = api_client or ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.coordination = client.CoordinationV1Api(self.api_client)

    def to_dict(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    # ------------------------------------------------------------------
    # AWSMachine
    # ------------------------------------------------------------------
    def get_aws_machine(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return _none_on_404(
            self.custom.get_namespaced_custom_object,
            INFRA_GROUP, INFRA_VERSION, namespace, AWS_MACHINE_PLURAL, name,
        )

    def list_aws_machines(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            resp = self.custom.list_namespaced_custom_object(
                INFRA_GROUP, INFRA_VERSION, namespace, AWS_MACHINE_PLURAL,
            )
        else:
            resp = self.custom.list_cluster_custom_object(
                INFRA_GROUP, INFRA_VERSION, AWS_MACHINE_PLURAL,
            )
        return list(resp.get("items", []))

    def create_aws_machine(self, body: Dict[str, Any]) -> Dict[str, Any]:
        namespace = body["metadata"]["namespace"]
        return self.custom.create_namespaced_custom_object(
            INFRA_GROUP, INFRA_VERSION, namespace, AWS_MACHINE_PLURAL, body,
        )

    def patch_aws_machine(self, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.custom.patch_namespaced_custom_object(
            INFRA_GROUP, INFRA_VERSION, namespace, AWS_MACHINE_PLURAL, name, patch,
        )

    def patch_aws_machine_status(self, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.custom.patch_namespaced_custom_object_status(
            INFRA_GROUP, INFRA_VERSION, namespace, AWS_MACHINE_PLURAL, name, patch,
        )

    # ------------------------------------------------------------------
    # Machine / Config
    # ------------------------------------------------------------------
    def get_machine(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return _none_on_404(
            self.custom.get_namespaced_custom_object,
            MACHINE_GROUP, MACHINE_VERSION, namespace, MACHINE_PLURAL, name,
        )

    def replace_machine(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Full update; ``metadata.resourceVersion`` guards against lost writes."""
        metadata = body["metadata"]
        return self.custom.replace_namespaced_custom_object(
            MACHINE_GROUP, MACHINE_VERSION, metadata["namespace"], MACHINE_PLURAL, metadata["name"], body,
        )

    def patch_machine_status(self, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.custom.patch_namespaced_custom_object_status(
            MACHINE_GROUP, MACHINE_VERSION, namespace, MACHINE_PLURAL, name, patch,
        )

    def get_config(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return _none_on_404(
            self.custom.get_namespaced_custom_object,
            MACHINE_GROUP, MACHINE_VERSION, namespace, CONFIG_PLURAL, name,
        )

    # ------------------------------------------------------------------
    # Infrastructure providers
    # ------------------------------------------------------------------
    def get_aws_infra_provider(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return _none_on_404(
            self.custom.get_namespaced_custom_object,
            INFRA_GROUP, INFRA_VERSION, namespace, AWS_INFRA_PROVIDER_PLURAL, name,
        )

    def patch_aws_infra_provider_status(self, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.custom.patch_namespaced_custom_object_status(
            INFRA_GROUP, INFRA_VERSION, namespace, AWS_INFRA_PROVIDER_PLURAL, name, patch,
        )

    def get_infra_provider(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return _none_on_404(
            self.custom.get_namespaced_custom_object,
            MACHINE_GROUP, MACHINE_VERSION, namespace, INFRA_PROVIDER_PLURAL, name,
        )

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------
    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        secret = _none_on_404(self.core.read_namespaced_secret, name, namespace)
        if secret is None:
            return None
        return self.to_dict(secret)

    def get_secret_data(self, namespace: str, name: str) -> Optional[Dict[str, bytes]]:
        """Secret data with values base64-decoded."""
        secret = self.get_secret(namespace, name)
        if secret is None:
            return None
        return {k: base64.b64decode(v) for k, v in (secret.get("data") or {}).items()}

    def create_secret(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.to_dict(self.core.create_namespaced_secret(namespace, body))

    def replace_secret(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.to_dict(self.core.replace_namespaced_secret(name, namespace, body))

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def get_node(self, name: str) -> Optional[Dict[str, Any]]:
        node = _none_on_404(self.core.read_node, name)
        if node is None:
            return None
        return self.to_dict(node)

    def patch_node_annotations(self, name: str, annotations: Dict[str, str]) -> Dict[str, Any]:
        body = {"metadata": {"annotations": annotations}}
        return self.to_dict(self.core.patch_node(name, body))
