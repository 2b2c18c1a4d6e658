"""In-process controller manager.

Feeds watch events into per-controller work queues and drains them with a
bounded pool of worker threads per controller. A failed reconcile is retried
with per-key exponential backoff; a ``requeue_after`` result is honoured as
a delayed add.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import socket
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from awsprovider.context import Context
from awsprovider.controllers.result import Request, Result
from awsprovider.metrics import (
	RECONCILE_ERRORS,
	RECONCILE_TIME,
	RECONCILE_TOTAL,
	WORKQUEUE_DEPTH,
)
from awsprovider.types import (
	AWS_INFRA_PROVIDER_PLURAL,
	AWS_MACHINE_KIND,
	AWS_MACHINE_PLURAL,
	INFRA_GROUP,
	INFRA_VERSION,
	MACHINE_GROUP,
	MACHINE_PLURAL,
	MACHINE_VERSION,
	ObjectReference,
)

logger = logging.getLogger(__name__)

BACKOFF_BASE = 0.005
BACKOFF_MAX = 1000.0


class WorkQueue:
	"""
	Deduplicating work queue.

	A key that is added while queued is dropped; a key that is added while
	being processed is queued again once :meth:`done` is called for it, so
	the same key is never handed to two workers at once.
	"""

	def __init__(
		self,
		name: str,
		base_delay: float = BACKOFF_BASE,
		max_delay: float = BACKOFF_MAX,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.name = name
		self.base_delay = base_delay
		self.max_delay = max_delay
		self._clock = clock
		self._queue: deque = deque()
		self._dirty: Set[str] = set()
		self._processing: Set[str] = set()
		self._waiting: List[tuple] = []
		self._seq = itertools.count()
		self._failures: Dict[str, int] = {}
		self._cond = threading.Condition()
		self._shutdown = False

	def __len__(self) -> int:
		with self._cond:
			return len(self._queue)

	def _update_depth(self) -> None:
		WORKQUEUE_DEPTH.labels(controller=self.name).set(len(self._queue))

	def add(self, key: str) -> None:
		with self._cond:
			self._add_locked(key)

	def _add_locked(self, key: str) -> None:
		if self._shutdown or key in self._dirty:
			return
		self._dirty.add(key)
		if key not in self._processing:
			self._queue.append(key)
			self._update_depth()
			self._cond.notify()

	def add_after(self, key: str, delay: float) -> None:
		if delay <= 0:
			self.add(key)
			return
		with self._cond:
			if self._shutdown:
				return
			heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), key))
			self._cond.notify()

	def when(self, key: str) -> float:
		"""Backoff delay for the next failure of ``key``."""
		with self._cond:
			failures = self._failures.get(key, 0)
			self._failures[key] = failures + 1
		return min(self.base_delay * (2 ** failures), self.max_delay)

	def add_rate_limited(self, key: str) -> None:
		self.add_after(key, self.when(key))

	def forget(self, key: str) -> None:
		with self._cond:
			self._failures.pop(key, None)

	def num_requeues(self, key: str) -> int:
		with self._cond:
			return self._failures.get(key, 0)

	def _promote_locked(self) -> Optional[float]:
		"""Move due delayed keys onto the queue; return seconds until the next one."""
		now = self._clock()
		while self._waiting and self._waiting[0][0] <= now:
			_, _, key = heapq.heappop(self._waiting)
			self._add_locked(key)
		if self._waiting:
			return max(0.0, self._waiting[0][0] - now)
		return None

	def get(self, timeout: Optional[float] = None) -> Optional[str]:
		"""
		Block until a key is ready.

		Returns:
			The key, or None on shutdown or when ``timeout`` passes first
		"""
		end = None if timeout is None else self._clock() + timeout
		with self._cond:
			while True:
				if self._shutdown:
					return None
				next_due = self._promote_locked()
				if self._queue:
					key = self._queue.popleft()
					self._dirty.discard(key)
					self._processing.add(key)
					self._update_depth()
					return key
				wait = next_due
				if end is not None:
					left = end - self._clock()
					if left <= 0:
						return None
					wait = left if wait is None else min(wait, left)
				self._cond.wait(wait)

	def done(self, key: str) -> None:
		with self._cond:
			self._processing.discard(key)
			if key in self._dirty:
				self._queue.append(key)
				self._update_depth()
				self._cond.notify()

	def shutdown(self) -> None:
		with self._cond:
			self._shutdown = True
			self._cond.notify_all()


class Controller:
	"""
	Worker pool draining one work queue into one reconciler.

	Args:
		reconciler: Object with a ``name`` and ``reconcile(ctx, request)``
		workers: Number of worker threads
		stop: Process-wide stop signal
		reconcile_timeout: Deadline for each reconcile, in seconds
	"""

	def __init__(
		self,
		reconciler: Any,
		workers: int,
		stop: threading.Event,
		reconcile_timeout: Optional[float] = None,
		queue: Optional[WorkQueue] = None,
	) -> None:
		self.reconciler = reconciler
		self.name = reconciler.name
		self.workers = max(1, workers)
		self.stop = stop
		self.reconcile_timeout = reconcile_timeout
		self.queue = queue or WorkQueue(self.name)
		self._threads: List[threading.Thread] = []

	def start(self) -> None:
		for i in range(self.workers):
			t = threading.Thread(
				target=self._worker,
				name=f"{self.name}-worker-{i}",
				daemon=True
			)
			t.start()
			self._threads.append(t)
		logger.info(f"Started {self.workers} workers for controller {self.name}")

	def join(self, timeout: float = 5.0) -> None:
		for t in self._threads:
			t.join(timeout=timeout)
		self._threads.clear()

	def _worker(self) -> None:
		while not self.stop.is_set():
			key = self.queue.get(timeout=1.0)
			if key is None:
				continue
			try:
				self.process(key)
			finally:
				self.queue.done(key)

	def process(self, key: str) -> Optional[Result]:
		"""Reconcile one key and schedule its follow-up."""
		ctx = Context(self.stop, self.reconcile_timeout)
		start = time.monotonic()
		try:
			result = self.reconciler.reconcile(ctx, Request.from_key(key))
		except Exception as e:
			RECONCILE_ERRORS.labels(controller=self.name).inc()
			RECONCILE_TOTAL.labels(controller=self.name, result="error").inc()
			delay = self.queue.when(key)
			logger.warning(f"Reconciler {self.name} error for {key}, retrying in {delay:.3f}s: {e}")
			self.queue.add_after(key, delay)
			return None
		finally:
			RECONCILE_TIME.labels(controller=self.name).observe(time.monotonic() - start)

		if result.requeue_after:
			self.queue.forget(key)
			self.queue.add_after(key, result.requeue_after)
			RECONCILE_TOTAL.labels(controller=self.name, result="requeue_after").inc()
		elif result.requeue:
			self.queue.add_rate_limited(key)
			RECONCILE_TOTAL.labels(controller=self.name, result="requeue").inc()
		else:
			self.queue.forget(key)
			RECONCILE_TOTAL.labels(controller=self.name, result="success").inc()
		return result


def object_key(obj: Dict[str, Any]) -> str:
	metadata = obj.get("metadata") or {}
	namespace = metadata.get("namespace") or ""
	name = metadata.get("name", "")
	return f"{namespace}/{name}" if namespace else name


def infrastructure_ref_key(obj: Dict[str, Any]) -> List[str]:
	"""Key of the AWSMachine a Machine points at, if any."""
	ref = ObjectReference.from_dict((obj.get("spec") or {}).get("infrastructureRef"))
	if ref is None or ref.kind != AWS_MACHINE_KIND or ref.group != INFRA_GROUP or not ref.name:
		return []
	namespace = ref.namespace or (obj.get("metadata") or {}).get("namespace", "")
	return [f"{namespace}/{ref.name}"]


@dataclass
class Source:
	"""A list/watch endpoint and how its objects map to queue keys."""
	name: str
	list_fn: Callable[..., Any]
	queue: WorkQueue
	mapper: Callable[[Dict[str, Any]], List[str]] = lambda obj: [object_key(obj)]
	args: tuple = ()


class Watcher:
	"""Relists a source every resync period and watches it in between."""

	def __init__(
		self,
		source: Source,
		to_dict: Callable[[Any], Dict[str, Any]],
		stop: threading.Event,
		resync_period: float = 600.0,
	) -> None:
		self.source = source
		self.to_dict = to_dict
		self.stop = stop
		self.resync_period = resync_period
		self._thread: Optional[threading.Thread] = None

	def start(self) -> None:
		self._thread = threading.Thread(
			target=self._watch_loop,
			name=f"watch-{self.source.name}",
			daemon=True
		)
		self._thread.start()

	def join(self, timeout: float = 5.0) -> None:
		if self._thread is not None:
			self._thread.join(timeout=timeout)

	def enqueue(self, obj: Any) -> None:
		for key in self.source.mapper(self.to_dict(obj)):
			self.source.queue.add(key)

	def relist(self) -> str:
		"""Enqueue every object; return the list's resourceVersion."""
		resp = self.to_dict(self.source.list_fn(*self.source.args))
		for item in resp.get("items") or []:
			for key in self.source.mapper(item):
				self.source.queue.add(key)
		return (resp.get("metadata") or {}).get("resourceVersion", "")

	def _watch_loop(self) -> None:
		w = watch.Watch()
		while not self.stop.is_set():
			try:
				resource_version = self.relist()
				deadline = time.monotonic() + self.resync_period
				while not self.stop.is_set() and time.monotonic() < deadline:
					for event in w.stream(
						self.source.list_fn,
						*self.source.args,
						resource_version=resource_version,
						timeout_seconds=30
					):
						if self.stop.is_set():
							w.stop()
							break
						if event["type"] == "ERROR":
							logger.info(f"Watch on {self.source.name} returned an error, relisting")
							resource_version = self.relist()
							break
						obj = self.to_dict(event["object"])
						resource_version = (obj.get("metadata") or {}).get("resourceVersion", resource_version)
						for key in self.source.mapper(obj):
							self.source.queue.add(key)
			except ApiException as e:
				if e.status == 410:
					logger.info(f"Watch on {self.source.name} expired, relisting")
					continue
				logger.error(f"Error watching {self.source.name}: {e}")
				self.stop.wait(5)
			except Exception as e:
				logger.error(f"Error watching {self.source.name}: {e}")
				self.stop.wait(5)


class LeaderElector:
	"""
	Lease based leader election.

	Args:
		api: CoordinationV1Api
		name: Lease name
		namespace: Lease namespace
		identity: Holder identity; defaults to hostname plus a random suffix
	"""

	def __init__(
		self,
		api: client.CoordinationV1Api,
		name: str,
		namespace: str,
		identity: Optional[str] = None,
		lease_duration: float = 15.0,
		renew_deadline: float = 10.0,
		retry_period: float = 2.0,
	) -> None:
		self.api = api
		self.name = name
		self.namespace = namespace
		self.identity = identity or f"{socket.gethostname()}_{uuid.uuid4()}"
		self.lease_duration = lease_duration
		self.renew_deadline = renew_deadline
		self.retry_period = retry_period

	def _lease_body(self, lease: Optional[client.V1Lease], now: datetime) -> client.V1Lease:
		transitions = 0
		acquire_time = now
		if lease is not None and lease.spec is not None:
			transitions = lease.spec.lease_transitions or 0
			if lease.spec.holder_identity == self.identity:
				acquire_time = lease.spec.acquire_time or now
			else:
				transitions += 1
		return client.V1Lease(
			metadata=client.V1ObjectMeta(
				name=self.name,
				namespace=self.namespace,
				resource_version=lease.metadata.resource_version if lease is not None else None,
			),
			spec=client.V1LeaseSpec(
				holder_identity=self.identity,
				lease_duration_seconds=int(self.lease_duration),
				acquire_time=acquire_time,
				renew_time=now,
				lease_transitions=transitions,
			),
		)

	def try_acquire_or_renew(self) -> bool:
		now = datetime.now(timezone.utc)
		try:
			lease = self.api.read_namespaced_lease(self.name, self.namespace)
		except ApiException as e:
			if e.status != 404:
				logger.warning(f"Failed to read lease {self.namespace}/{self.name}: {e}")
				return False
			try:
				self.api.create_namespaced_lease(self.namespace, self._lease_body(None, now))
				return True
			except ApiException as e:
				logger.debug(f"Failed to create lease: {e}")
				return False

		spec = lease.spec
		if spec is not None and spec.holder_identity and spec.holder_identity != self.identity:
			renewed = spec.renew_time
			duration = spec.lease_duration_seconds or self.lease_duration
			if renewed is not None and renewed + timedelta(seconds=duration) > now:
				return False
		try:
			self.api.replace_namespaced_lease(self.name, self.namespace, self._lease_body(lease, now))
			return True
		except ApiException as e:
			logger.debug(f"Failed to update lease: {e}")
			return False

	def run(self, stop: threading.Event, on_started: Callable[[], None], on_stopped: Callable[[], None]) -> None:
		"""Block until leadership is gained, call ``on_started``, then renew until lost or stopped."""
		logger.info(f"Attempting to acquire leader lease {self.namespace}/{self.name}")
		while not stop.is_set():
			if self.try_acquire_or_renew():
				break
			stop.wait(self.retry_period)
		if stop.is_set():
			return
		logger.info(f"Acquired leader lease as {self.identity}")
		on_started()

		last_renew = time.monotonic()
		while not stop.wait(self.retry_period):
			if self.try_acquire_or_renew():
				last_renew = time.monotonic()
			elif time.monotonic() - last_renew > self.renew_deadline:
				logger.error("Leader lease lost")
				on_stopped()
				return


class Manager:
	"""
	Owns the watches, queues and worker pools of all controllers.

	Args:
		kube: Kubernetes client wrapper
		settings: Process settings
		awsmachine: AWSMachine reconciler
		node: Node reconciler
		provider: AWSInfrastructureProvider reconciler
	"""

	def __init__(self, kube, settings, awsmachine, node, provider, stop: Optional[threading.Event] = None) -> None:
		self.kube = kube
		self.settings = settings
		self.stop_event = stop or threading.Event()
		self._ready = threading.Event()

		timeout = settings.reconcile_timeout
		self.controllers: List[Controller] = [
			Controller(awsmachine, settings.awsmachine_concurrency, self.stop_event, timeout),
			Controller(node, settings.node_concurrency, self.stop_event, timeout),
			Controller(provider, 1, self.stop_event, timeout),
		]
		am_queue = self.controllers[0].queue
		node_queue = self.controllers[1].queue
		provider_queue = self.controllers[2].queue

		custom = kube.custom
		self.sources: List[Source] = [
			Source(
				"awsmachines",
				custom.list_cluster_custom_object,
				am_queue,
				args=(INFRA_GROUP, INFRA_VERSION, AWS_MACHINE_PLURAL),
			),
			Source(
				"machines",
				custom.list_cluster_custom_object,
				am_queue,
				mapper=infrastructure_ref_key,
				args=(MACHINE_GROUP, MACHINE_VERSION, MACHINE_PLURAL),
			),
			Source("nodes", kube.core.list_node, node_queue),
			Source(
				"awsinfrastructureproviders",
				custom.list_cluster_custom_object,
				provider_queue,
				args=(INFRA_GROUP, INFRA_VERSION, AWS_INFRA_PROVIDER_PLURAL),
			),
		]
		self.watchers = [
			Watcher(s, self._as_dict, self.stop_event, settings.resync_period)
			for s in self.sources
		]

	def _as_dict(self, obj: Any) -> Dict[str, Any]:
		if isinstance(obj, dict):
			return obj
		return self.kube.to_dict(obj)

	@property
	def ready(self) -> bool:
		return self._ready.is_set()

	def start_controllers(self) -> None:
		for c in self.controllers:
			c.start()
		for w in self.watchers:
			w.start()
		self._ready.set()
		logger.info("Controllers started")

	def stop(self) -> None:
		if self.stop_event.is_set():
			return
		logger.info("Stopping controllers")
		self.stop_event.set()
		for c in self.controllers:
			c.queue.shutdown()

	def run(self) -> None:
		"""Start controllers (under leader election when enabled) and block until stopped."""
		if self.settings.enable_leader_election:
			elector = LeaderElector(
				self.kube.coordination,
				self.settings.leader_election_id,
				self.settings.leader_election_namespace,
			)
			elector.run(self.stop_event, self.start_controllers, self.stop)
		else:
			self.start_controllers()
		self.stop_event.wait()
		self._ready.clear()
		for w in self.watchers:
			w.join()
		for c in self.controllers:
			c.join()
		logger.info("Manager stopped")
