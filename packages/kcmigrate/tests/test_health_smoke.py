"""
Tests for health probing and the smoke suite

Validates:
- HTTP health error codes (status, body status, timeout, connection)
- Exponential backoff bounded by retries and the overall deadline
- Smoke checks run in a fixed order and reuse the admin token
"""

import socket

import httpx
import pytest

from kcmigrate import HealthCheckResult, HealthProber, SmokeSuite
from kcmigrate.health import http_health_check, tcp_port_check


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


# ==================== HTTP Health Tests ====================

def test_http_health_up():
    with _client(lambda r: httpx.Response(200, json={"status": "UP"})) as client:
        result = http_health_check("http://kc/health", client=client)

    assert result.passed
    assert result.error_code is None


def test_http_health_plain_body():
    """Non-JSON 200 responses count as healthy."""
    with _client(lambda r: httpx.Response(200, text="OK")) as client:
        assert http_health_check("http://kc/health", client=client).passed


def test_http_health_status_mismatch():
    with _client(lambda r: httpx.Response(503)) as client:
        result = http_health_check("http://kc/health", client=client)

    assert not result.passed
    assert result.error_code == "HEALTH_HTTP_503"
    assert result.details["status"] == 503


def test_http_health_body_down():
    """200 with status DOWN is not healthy."""
    with _client(lambda r: httpx.Response(200, json={"status": "DOWN", "checks": []})) as client:
        result = http_health_check("http://kc/health", client=client)

    assert not result.passed
    assert result.error_code == "HEALTH_STATUS_DOWN"


def test_http_health_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with _client(handler) as client:
        result = http_health_check("http://kc/health", client=client, timeout=0.5)

    assert result.error_code == "HEALTH_TIMEOUT"


def test_http_health_connection_refused():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client:
        result = http_health_check("http://kc/health", client=client)

    assert result.error_code == "HEALTH_CONNECTION_REFUSED"


def test_tcp_port_check_open_and_closed():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]
    try:
        assert tcp_port_check("127.0.0.1", port, timeout=1).passed
    finally:
        server.close()

    closed = tcp_port_check("127.0.0.1", port, timeout=1)
    assert not closed.passed
    assert closed.error_code in ("HEALTH_PORT_CLOSED", "HEALTH_TIMEOUT")


# ==================== Prober Tests ====================

class ScriptedProbe:
    """Fails `failures` times, then passes."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            return HealthCheckResult("http_health", False, "503", error_code="HEALTH_HTTP_503")
        return HealthCheckResult("http_health", True, "UP")


def test_backoff_delays():
    prober = HealthProber(initial_delay=5, max_delay=60)

    assert [prober.delay_for(n) for n in range(6)] == [5, 10, 20, 40, 60, 60]


def test_prober_retries_until_healthy():
    sleeps = []
    prober = HealthProber(retries=5, initial_delay=1, max_delay=8, timeout=300, sleep=sleeps.append)
    probe = ScriptedProbe(failures=3)

    result = prober.wait_until_healthy(probe)

    assert result.passed
    assert result.details["attempts"] == 4
    assert sleeps == [1, 2, 4]


def test_prober_gives_up_after_retries():
    sleeps = []
    prober = HealthProber(retries=3, initial_delay=1, max_delay=8, timeout=300, sleep=sleeps.append)
    probe = ScriptedProbe(failures=10)

    result = prober.wait_until_healthy(probe)

    assert not result.passed
    assert result.error_code == "HEALTH_HTTP_503"
    assert result.details["attempts"] == 3
    assert probe.calls == 3
    assert sleeps == [1, 2]


def test_prober_respects_deadline():
    """The next sleep would cross the deadline, so polling stops early."""
    now = [0.0]

    def sleep(seconds):
        now[0] += seconds

    prober = HealthProber(retries=10, initial_delay=10, max_delay=60, timeout=25, sleep=sleep, clock=lambda: now[0])
    probe = ScriptedProbe(failures=10)

    result = prober.wait_until_healthy(probe)

    assert not result.passed
    assert result.details["deadline_exceeded"] is True
    assert probe.calls == 2
    assert now[0] == 10


# ==================== Smoke Suite Tests ====================

def keycloak_handler(requests, token_status=200, clients=None):
    clients = [{"clientId": "account"}] if clients is None else clients

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, request.headers.get("authorization")))
        path = request.url.path
        if path == "/health":
            return httpx.Response(200, json={"status": "UP"})
        if path == "/realms/master":
            return httpx.Response(200, json={"realm": "master"})
        if path == "/realms/master/protocol/openid-connect/token":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "abc"})
        if path == "/admin/realms":
            return httpx.Response(200, json=[{"realm": "master"}])
        if path == "/admin/realms/master/users":
            return httpx.Response(200, json=[])
        if path == "/admin/realms/master/clients":
            return httpx.Response(200, json=clients)
        if path == "/admin/serverinfo":
            return httpx.Response(200, json={"providers": {"realm": {}}})
        return httpx.Response(404)

    return handler


def _suite(client, password="s3cret"):
    return SmokeSuite(
        service_url="http://kc.local:8080/",
        health_url="http://kc.local:8080/health",
        admin_password=password,
        client=client,
    )


def test_smoke_suite_passes():
    requests = []
    with _client(keycloak_handler(requests)) as client:
        report = _suite(client).run()

    assert report.passed, report.failures
    assert [r.name for r in report.results] == [
        "health",
        "realm",
        "admin_login",
        "realm_listing",
        "user_listing",
        "client_listing",
        "provider_registration",
    ]
    assert report.summary() == "7/7 smoke checks passed"
    admin_calls = [r for r in requests if r[1].startswith("/admin")]
    assert admin_calls and all(auth == "Bearer abc" for _, _, auth in admin_calls)


def test_smoke_login_failure_fails_admin_checks():
    """Without a token the admin checks fail instead of being skipped."""
    with _client(keycloak_handler([], token_status=401)) as client:
        report = _suite(client).run()

    assert not report.passed
    failed = {r.name: r.error_code for r in report.failures}
    assert failed["admin_login"] == "SMOKE_HTTP_401"
    assert failed["realm_listing"] == "SMOKE_NO_TOKEN"
    assert failed["provider_registration"] == "SMOKE_NO_TOKEN"
    assert "health" not in failed


def test_smoke_without_password():
    with _client(keycloak_handler([])) as client:
        report = _suite(client, password=None).run()

    assert {r.name: r.error_code for r in report.failures}["admin_login"] == "SMOKE_NO_CREDENTIALS"


def test_smoke_empty_client_list_fails():
    with _client(keycloak_handler([], clients=[])) as client:
        report = _suite(client).run()

    assert [r.name for r in report.failures] == ["client_listing"]
    assert report.failures[0].error_code == "SMOKE_BAD_RESPONSE"


def test_smoke_suite_closes_its_own_client(monkeypatch):
    """Without a shared client the suite opens one per run and closes it."""
    real_client = httpx.Client
    opened = []

    def make_client(*args, **kwargs):
        client = real_client(transport=httpx.MockTransport(keycloak_handler([])))
        opened.append(client)
        return client

    monkeypatch.setattr(httpx, "Client", make_client)
    suite = _suite(None)

    assert suite.run().passed
    assert suite.run().passed
    assert len(opened) == 2
    assert all(client.is_closed for client in opened)


def test_smoke_suite_leaves_shared_client_open():
    with _client(keycloak_handler([])) as client:
        _suite(client).run()

        assert not client.is_closed
