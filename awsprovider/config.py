"""Process settings.

Defaults are overlaid by an optional YAML file, then ``AWSPROVIDER_*``
environment variables, then command-line flags.
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "AWSPROVIDER_"


@dataclass
class Settings:
    metrics_addr: str = ":8081"
    awsmachine_concurrency: int = 10
    node_concurrency: int = 10
    enable_leader_election: bool = False
    leader_election_id: str = "4466ae64.crit.sh"
    leader_election_namespace: str = "kube-system"
    default_region: Optional[str] = None
    aws_rate_limit: float = 5.0
    aws_rate_burst: int = 5
    aws_connect_timeout: float = 5.0
    aws_read_timeout: float = 30.0
    reconcile_timeout: float = 120.0
    resync_period: float = 600.0
    kubeconfig: Optional[str] = None
    log_level: str = "INFO"

    def update(self, values: Mapping[str, Any], source: str = "") -> None:
        """Set known fields from ``values``, coercing to each field's type."""
        known = {f.name: f for f in fields(self)}
        for key, raw in values.items():
            name = key.replace("-", "_").lower()
            if name not in known:
                logger.warning(f"Ignoring unknown setting {key!r} from {source or 'input'}")
                continue
            if raw is None:
                continue
            setattr(self, name, _coerce(known[name].type, raw))

    @property
    def metrics_host_port(self) -> tuple:
        host, _, port = self.metrics_addr.rpartition(":")
        return host or "0.0.0.0", int(port)


def _coerce(annotation: Any, raw: Any) -> Any:
    kind = str(annotation)
    if "bool" in kind:
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if "int" in kind:
        return int(raw)
    if "float" in kind:
        return float(raw)
    return str(raw)


def load_file(path: str) -> Dict[str, Any]:
    """
    Read settings from a YAML file.

    Raises:
        ValueError: If the document is not a mapping
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return data


def from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    return {
        k[len(ENV_PREFIX):].lower(): v
        for k, v in environ.items()
        if k.startswith(ENV_PREFIX)
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="awsprovider",
        description="Machine API infrastructure provider for AWS",
    )
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--metrics-addr", help="The address the metric endpoint binds to.")
    parser.add_argument("--awsmachine-concurrency", type=int, help="Number of AWSMachines to process simultaneously")
    parser.add_argument("--node-concurrency", type=int, help="Number of Nodes to process simultaneously")
    parser.add_argument(
        "--enable-leader-election",
        action="store_true",
        default=None,
        help="Enable leader election for controller manager. "
        "Enabling this will ensure there is only one active controller manager.",
    )
    parser.add_argument("--leader-election-namespace", help="Namespace holding the leader election lease")
    parser.add_argument("--default-region", help="Region used when an AWSMachine names none")
    parser.add_argument("--aws-rate-limit", type=float, help="EC2 requests per second per region")
    parser.add_argument("--aws-rate-burst", type=int, help="EC2 request burst per region")
    parser.add_argument("--reconcile-timeout", type=float, help="Deadline for a single reconcile, in seconds")
    parser.add_argument("--resync-period", type=float, help="Full relist interval, in seconds")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig; in-cluster config is used when unset")
    parser.add_argument("--log-level", help="Logging level")
    return parser


def load_settings(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings from file, environment and flags, in increasing precedence."""
    args = build_parser().parse_args(argv)
    settings = Settings()
    if args.config:
        settings.update(load_file(args.config), source=args.config)
    settings.update(from_env(environ), source="environment")
    flags = {k: v for k, v in vars(args).items() if k != "config" and v is not None}
    settings.update(flags, source="flags")
    return settings
