from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from werkzeug.serving import make_server

from awsprovider.metrics import REGISTRY
from awsprovider.schema import render_schema

logger = logging.getLogger(__name__)


def create_app(
	manager: Optional[Any] = None,
	schema_fn: Callable[[], Dict[str, Any]] = render_schema,
) -> Flask:
	app = Flask(__name__)
	app.config['manager'] = manager

	@app.get("/healthz")
	def healthz() -> Any:
		return jsonify({"status": "ok"})

	@app.get("/readyz")
	def readyz() -> Any:
		mgr = app.config['manager']
		if mgr is None or not mgr.ready:
			return jsonify({"status": "not ready"}), 503
		return jsonify({"status": "ok"})

	@app.get("/metrics")
	def metrics() -> Any:
		return Response(generate_latest(REGISTRY), mimetype=CONTENT_TYPE_LATEST)

	@app.get("/schema")
	def schema() -> Any:
		return jsonify(schema_fn())

	return app


class MetricsServer:
	"""Serves the Flask app on a background thread."""

	def __init__(self, app: Flask, host: str, port: int) -> None:
		self._server = make_server(host, port, app, threaded=True)
		self._thread = threading.Thread(
			target=self._server.serve_forever,
			name="metrics-server",
			daemon=True
		)

	def start(self) -> None:
		self._thread.start()
		logger.info(f"Serving metrics on {self._server.host}:{self._server.port}")

	def stop(self) -> None:
		self._server.shutdown()
		self._thread.join(timeout=5.0)
