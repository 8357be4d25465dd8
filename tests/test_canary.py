import json
import threading
from urllib.parse import parse_qs

import httpx
import pytest

from o11ycanary.canary import CANARY_METRIC, Canary, CanaryError, build_query
from o11ycanary.config import TLSConfig
from o11ycanary.otlp import initialize_resource


def _vector(request_id):
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {
                    "metric": {"__name__": CANARY_METRIC, "canary_request_id": request_id},
                    "value": [1700000000, "42"],
                }
            ],
        },
    }


def _form(request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def test_build_query_matches_format():
    assert build_query("abc") == 'o11y_canary_canaried_metric_total{canary="true", canary_request_id="abc"}'


def test_next_request_id_fills_then_rotates():
    canary = Canary()
    assert canary.next_request_id("a", 0, 2) == "a"
    assert canary.next_request_id("b", 1, 2) == "b"
    assert canary.next_request_id("c", 0, 2) == "a"
    assert canary.next_request_id("d", 3, 2) == "b"
    assert canary.active_request_ids == ["a", "b"]


def test_write_exports_gauge_with_request_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={})

    canary = Canary(transport=httpx.MockTransport(handler))
    resource = initialize_resource("1.0", "c1")
    client = canary.init_client(resource, "collector:4318", 5.0, 2.0, None)
    try:
        result = canary.write(client, ["collector:4318"], "req-1", 2.0)
    finally:
        client.close()
    assert result is None
    assert len(seen) >= 1
    assert str(seen[0].url) == "http://collector:4318/v1/metrics"
    payload = json.loads(seen[0].content)
    resource_metrics = payload["resourceMetrics"][0]
    attrs = {a["key"]: a["value"]["stringValue"] for a in resource_metrics["resource"]["attributes"]}
    assert attrs["service.name"] == "c1"
    metric = resource_metrics["scopeMetrics"][0]["metrics"][0]
    assert metric["name"] == CANARY_METRIC
    point = metric["gauge"]["dataPoints"][0]
    labels = {a["key"]: a["value"]["stringValue"] for a in point["attributes"]}
    assert labels == {"target": "collector:4318", "canary": "true", "canary_request_id": "req-1"}
    assert 0 <= point["asDouble"] < 100


def test_write_export_failure_is_logged_not_raised():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    canary = Canary(transport=httpx.MockTransport(handler))
    client = canary.init_client(initialize_resource("1.0"), "collector:4318", 5.0, 2.0, None)
    try:
        result = canary.write(client, ["collector:4318"], "req-2", 2.0)
    finally:
        client.close()
    assert result is None
    assert len(calls) >= 1


def test_write_timeout_raises_and_records_error():
    release = threading.Event()

    def handler(request):
        release.wait(5)
        return httpx.Response(200, json={})

    canary = Canary(transport=httpx.MockTransport(handler))
    client = canary.init_client(initialize_resource("1.0"), "collector:4318", 5.0, 2.0, None)
    try:
        with pytest.raises(CanaryError, match="write operation timed out"):
            canary.write(client, ["collector:4318"], "req-3", 0.05)
        assert isinstance(canary.insertion_timestamps["req-3"], CanaryError)
    finally:
        release.set()
        client.close()


def test_init_client_missing_ca_file_raises(tmp_path):
    canary = Canary()
    tls = TLSConfig(enabled=True, ca_file=str(tmp_path / "missing.crt"))
    with pytest.raises(CanaryError, match="failed to read CA file"):
        canary.init_client(initialize_resource("1.0"), "collector:4317", 5.0, 1.0, tls)


def test_query_success_sends_expected_promql():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_vector("req-4"))

    canary = Canary(transport=httpx.MockTransport(handler))
    assert canary.query(["prom:9090"], "req-4", 2.0, None) is None
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "http://prom:9090/api/v1/query"
    assert _form(seen[0])["query"] == build_query("req-4")


def test_query_falls_back_to_get_on_405():
    methods = []

    def handler(request):
        methods.append(request.method)
        if request.method == "POST":
            return httpx.Response(405)
        assert request.url.params["query"] == build_query("req-5")
        return httpx.Response(200, json=_vector("req-5"))

    canary = Canary(transport=httpx.MockTransport(handler))
    canary.query(["http://prom:9090/"], "req-5", 2.0, None)
    assert methods == ["POST", "GET"]


def test_query_empty_result_is_not_found():
    def handler(request):
        return httpx.Response(200, json={"status": "success", "data": {"resultType": "vector", "result": []}})

    canary = Canary(transport=httpx.MockTransport(handler))
    with pytest.raises(CanaryError, match="metric not found"):
        canary.query(["prom:9090"], "req-6", 2.0, None)


def test_query_error_status_raises():
    def handler(request):
        return httpx.Response(400, json={"status": "error", "errorType": "bad_data", "error": "parse error"})

    canary = Canary(transport=httpx.MockTransport(handler))
    with pytest.raises(CanaryError, match="bad_data: parse error"):
        canary.query(["prom:9090"], "req-7", 2.0, None)


def test_query_keeps_last_error_across_targets():
    def handler(request):
        if request.url.host == "bad":
            return httpx.Response(500, json={"status": "error", "error": "boom"})
        return httpx.Response(200, json=_vector("req-8"))

    canary = Canary(transport=httpx.MockTransport(handler))
    with pytest.raises(CanaryError, match="boom"):
        canary.query(["bad:9090", "good:9090"], "req-8", 2.0, None)


def test_query_timeout_raises_and_records_error():
    release = threading.Event()

    def handler(request):
        release.wait(5)
        return httpx.Response(200, json=_vector("req-9"))

    canary = Canary(transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(CanaryError, match="query operation timed out"):
            canary.query(["prom:9090"], "req-9", 0.05, None)
        assert isinstance(canary.insertion_timestamps["req-9"], CanaryError)
    finally:
        release.set()


def test_query_tls_bad_ca_raises(tmp_path):
    ca = tmp_path / "ca.crt"
    ca.write_text("not a certificate")
    canary = Canary(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=_vector("x"))))
    with pytest.raises(CanaryError, match="failed to parse CA certificate"):
        canary.query(["prom:9090"], "req-10", 2.0, TLSConfig(enabled=True, ca_file=str(ca)))