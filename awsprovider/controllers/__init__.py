"""Reconcilers for AWSMachine, Node and AWSInfrastructureProvider objects."""

from awsprovider.controllers.awsmachine import AWSMachineReconciler
from awsprovider.controllers.node import NodeReconciler
from awsprovider.controllers.provider import ProviderReconciler
from awsprovider.controllers.result import Request, Result

__all__ = [
    "AWSMachineReconciler",
    "NodeReconciler",
    "ProviderReconciler",
    "Request",
    "Result",
]
