from __future__ import annotations

import logging
import signal
import sys
from typing import Optional, Sequence

from awsprovider.api import MetricsServer, create_app
from awsprovider.aws.ec2 import EC2ClientFactory
from awsprovider.config import Settings, load_settings
from awsprovider.controllers import AWSMachineReconciler, NodeReconciler, ProviderReconciler
from awsprovider.kube import KubeClient, load_config
from awsprovider.manager import Manager
from awsprovider.ratelimit import LimiterRegistry

logger = logging.getLogger(__name__)


def build_manager(settings: Settings, kube: KubeClient) -> Manager:
	"""Wire reconcilers, the EC2 client factory and the Kubernetes client into a manager."""
	ec2 = EC2ClientFactory(
		limiters=LimiterRegistry(settings.aws_rate_limit, settings.aws_rate_burst),
		connect_timeout=settings.aws_connect_timeout,
		read_timeout=settings.aws_read_timeout,
	)
	return Manager(
		kube,
		settings,
		awsmachine=AWSMachineReconciler(kube, ec2, default_region=settings.default_region),
		node=NodeReconciler(kube, ec2),
		provider=ProviderReconciler(kube),
	)


def main(argv: Optional[Sequence[str]] = None) -> int:
	settings = load_settings(argv)
	logging.basicConfig(
		level=getattr(logging, settings.log_level.upper(), logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s %(message)s",
	)

	try:
		load_config(settings.kubeconfig)
	except Exception as e:
		logger.error(f"Could not load Kubernetes config: {e}")
		return 1

	kube = KubeClient()
	manager = build_manager(settings, kube)

	host, port = settings.metrics_host_port
	server = MetricsServer(create_app(manager), host, port)
	server.start()

	def handle_signal(signum, frame) -> None:
		logger.info(f"Received signal {signum}, shutting down")
		manager.stop()

	signal.signal(signal.SIGINT, handle_signal)
	signal.signal(signal.SIGTERM, handle_signal)

	logger.info("starting manager")
	try:
		manager.run()
	finally:
		server.stop()
	return 0


if __name__ == "__main__":
	sys.exit(main())
