"""Node link table.

A Node points back at the AWSMachine (and, when the machine controller set
it, the Machine) describing it through annotations holding a JSON object
reference. These are lookup links only; they carry no ownership and never
cascade deletes.
"""

from __future__ import annotations

import json
from typing import Dict, Optional

from awsprovider.types import ObjectReference

AWS_MACHINE_ANNOTATION = "infrastructure.crit.sh/awsmachine"
MACHINE_ANNOTATION = "machine.crit.sh/machine"


class LinkDecodeError(ValueError):
    pass


def encode_reference(ref: ObjectReference) -> str:
    return json.dumps(ref.to_dict(), separators=(",", ":"))


def decode_reference(data: str) -> ObjectReference:
    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        raise LinkDecodeError(f"cannot decode object reference {data!r}: {e}") from e
    if not isinstance(raw, dict):
        raise LinkDecodeError(f"object reference must be a JSON object, got {data!r}")
    return ObjectReference.from_dict(raw) or ObjectReference()


class NodeLinks:
    """View over the link annotations of a single node."""

    def __init__(self, annotations: Optional[Dict[str, str]]) -> None:
        self.annotations = dict(annotations or {})

    def _get(self, key: str) -> Optional[ObjectReference]:
        data = self.annotations.get(key)
        if data is None:
            return None
        return decode_reference(data)

    @property
    def aws_machine(self) -> Optional[ObjectReference]:
        return self._get(AWS_MACHINE_ANNOTATION)

    @property
    def machine(self) -> Optional[ObjectReference]:
        return self._get(MACHINE_ANNOTATION)

    def has_aws_machine(self) -> bool:
        return AWS_MACHINE_ANNOTATION in self.annotations

    def has_machine(self) -> bool:
        return MACHINE_ANNOTATION in self.annotations


def aws_machine_link(ref: ObjectReference) -> Dict[str, str]:
    """Annotation patch linking a node to ``ref``."""
    return {AWS_MACHINE_ANNOTATION: encode_reference(ref)}
