"""Deferred persistence of AWSMachine mutations.

A reconcile mutates its in-memory record freely and hands the result to
:class:`PatchHelper` once at the end. The helper diffs against the snapshot
taken on entry and sends JSON merge patches (RFC 7386) for status and for
metadata/spec, so only the fields this invocation touched are written.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict

from kubernetes.client.exceptions import ApiException

from awsprovider.types import AWSMachine

logger = logging.getLogger(__name__)


def merge_patch(original: Dict[str, Any], modified: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a JSON merge patch turning ``original`` into ``modified``.

    Nested mappings are diffed recursively; lists and scalars are replaced
    wholesale; keys missing from ``modified`` are deleted with ``None``.
    """
    patch: Dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None
    for key, value in modified.items():
        old = original.get(key)
        if isinstance(old, dict) and isinstance(value, dict):
            nested = merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif key not in original or old != value:
            patch[key] = copy.deepcopy(value)
    return patch


class PatchHelper:
    """Snapshot an AWSMachine and later persist whatever changed."""

    def __init__(self, kube, machine: AWSMachine) -> None:
        self.kube = kube
        self.before = machine.to_dict()

    def patch(self, machine: AWSMachine) -> None:
        """
        Persist changes to status, then to metadata and spec.

        Status goes first: removing the finalizer may let the object vanish,
        after which a status write would fail. A 404 means the object is
        already gone and there is nothing left to persist.

        Raises:
            ApiException: On any API failure other than 404
        """
        after = machine.to_dict()
        status_patch = merge_patch(
            {"status": self.before.get("status", {})},
            {"status": after.get("status", {})},
        )
        main_patch = merge_patch(
            {"metadata": self.before.get("metadata", {}), "spec": self.before.get("spec", {})},
            {"metadata": after.get("metadata", {}), "spec": after.get("spec", {})},
        )
        try:
            if status_patch:
                self.kube.patch_aws_machine_status(machine.namespace, machine.name, status_patch)
            if main_patch:
                self.kube.patch_aws_machine(machine.namespace, machine.name, main_patch)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"AWSMachine {machine.key} gone before patch")
                return
            raise
        self.before = after
