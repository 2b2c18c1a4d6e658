import pytest

from awsprovider.api import create_app
from awsprovider.metrics import AWS_REQUESTS


class StubManager:
    def __init__(self, ready):
        self.ready = ready


@pytest.fixture
def app():
    return create_app(StubManager(ready=True))


def test_healthz(app):
    resp = app.test_client().get("/healthz")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_readyz_reflects_manager_state():
    assert create_app(StubManager(ready=False)).test_client().get("/readyz").status_code == 503
    assert create_app(None).test_client().get("/readyz").status_code == 503
    assert create_app(StubManager(ready=True)).test_client().get("/readyz").status_code == 200


def test_metrics_exposes_provider_counters(app):
    AWS_REQUESTS.labels(operation="describe_instances").inc()

    resp = app.test_client().get("/metrics")

    assert resp.status_code == 200
    assert b"awsprovider_aws_requests_total" in resp.data


def test_schema_endpoint(app):
    body = app.test_client().get("/schema").get_json()

    assert body["title"] == "AWS Worker Config"
    assert body["properties"]["kind"]["default"] == "AWSMachine"
    assert set(body["properties"]["spec"]["required"]) == {"instanceType", "ami"}
