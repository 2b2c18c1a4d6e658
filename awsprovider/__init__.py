"""
AWS machine provider controllers.

Modules:
- providerid: parse/format of the canonical EC2 provider identity string
- types: AWSMachine / Machine records and their Kubernetes JSON shape
- linkage: node annotation links between Node, Machine and AWSMachine
- aws.ec2: EC2 compute backend adapter (launch, describe, terminate)
- kube: thin wrapper over the Kubernetes API for the resources we touch
- patch: merge-patch persistence of reconcile mutations
- context / ratelimit: cancellation and per-region EC2 throttling
- controllers: AWSMachine lifecycle, Node backfill, schema publisher
- manager: work queues, watches, worker pools and leader election
- config: settings from YAML, environment and flags
- api: health, readiness, metrics and schema endpoints
"""

__version__ = "0.1.0"
