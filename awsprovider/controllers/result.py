"""Request and result types shared by the reconcilers and the manager."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Request:
    """Identity of the object to reconcile. Cluster-scoped objects have no namespace."""
    name: str
    namespace: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @classmethod
    def from_key(cls, key: str) -> "Request":
        namespace, sep, name = key.partition("/")
        if not sep:
            return cls(name=namespace)
        return cls(name=name, namespace=namespace)


@dataclass(frozen=True)
class Result:
    """
    Outcome of a successful reconcile.

    ``Result()`` means done. ``requeue_after`` asks for another pass after the
    given number of seconds; ``requeue`` asks for one after the queue's backoff.
    Errors are raised, not returned.
    """
    requeue: bool = False
    requeue_after: Optional[float] = None

    @property
    def done(self) -> bool:
        return not self.requeue and not self.requeue_after
