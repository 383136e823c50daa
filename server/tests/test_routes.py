"""HTTP-level tests for the probe endpoints."""

import asyncio
import socket
import time

import httpx
import pytest

from app.api import routes
from app.core.environment import EnvironmentSnapshot, get_environment
from app.core.negotiate import AuthenticatedIdentity, NegotiateResult, get_negotiate_authenticator
from app.main import app
from app.services.command_runner import CommandRunner, SpawnResult
from app.services.sql_probe import SqlProbe


class FakeAuthenticator:
    def __init__(self, identity=None):
        self.identity = identity
        self.headers = []

    def authenticate(self, authorization):
        self.headers.append(authorization)
        if authorization is None:
            return NegotiateResult(header_present=False)
        return NegotiateResult(identity=self.identity, header_present=True)


@pytest.fixture
def override():
    def _override(dependency, value):
        app.dependency_overrides[dependency] = lambda: value
        return value

    return _override


def test_root_redirects_to_docs(client):
    response = client.get("/", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "/docs"


def test_health_endpoint_reports_status(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


# /sql


def test_sql_returns_server_info(client, override):
    class FakeConnection:
        def cursor(self):
            return self

        def execute(self, query):
            pass

        def fetchall(self):
            return [("SQL01", "Microsoft SQL Server 2022", "master")]

        def close(self):
            pass

    override(routes.get_sql_probe, SqlProbe(connect=lambda cs: FakeConnection()))

    response = client.get("/sql", params={"connectionString": "Server=sql01;Trusted_Connection=yes"})

    assert response.status_code == 200
    assert response.json() == {
        "connectionString": "Server=sql01;Trusted_Connection=yes",
        "server": "SQL01",
        "database": "master",
        "version": "Microsoft SQL Server 2022",
    }


def test_sql_failure_returns_500_with_error_text(client, override):
    def connect(connection_string):
        raise RuntimeError("Cannot generate SSPI context")

    override(routes.get_sql_probe, SqlProbe(connect=connect))

    response = client.get("/sql", params={"connectionString": "Server=sql01"})

    assert response.status_code == 500
    assert "Cannot generate SSPI context" in response.text


def test_sql_invalid_connection_string_is_500(client):
    response = client.get("/sql", params={"connectionString": "this is not a connection string"})

    assert response.status_code == 500
    assert response.text


def test_sql_without_any_connection_string(client, monkeypatch):
    monkeypatch.setattr(routes.settings, "sql_connection_string", None)

    response = client.get("/sql")

    assert response.status_code == 500
    assert response.text == routes.CONNECTION_STRING_MISSING_MESSAGE


def test_sql_falls_back_to_configured_connection_string(client, override, monkeypatch):
    seen = []

    def connect(connection_string):
        seen.append(connection_string)
        raise RuntimeError("stop here")

    monkeypatch.setattr(routes.settings, "sql_connection_string", "Server=configured")
    override(routes.get_sql_probe, SqlProbe(connect=connect))

    client.get("/sql")

    assert seen == ["Server=configured"]


# /getfile


def test_getfile_missing_path_is_404(client, tmp_path):
    missing = tmp_path / "absent.keytab"

    response = client.get("/getfile", params={"filePath": str(missing)})

    assert response.status_code == 404
    assert str(missing) in response.text


def test_getfile_returns_exact_bytes(client, tmp_path):
    payload = bytes(range(256)) * 4
    keytab = tmp_path / "client.keytab"
    keytab.write_bytes(payload)

    response = client.get("/getfile", params={"filePath": str(keytab)})

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-type"] == "application/octet-stream"
    assert "client.keytab" in response.headers["content-disposition"]


# /testkdc


def test_testkdc_success(client, monkeypatch):
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    try:
        port = listener.getsockname()[1]
        monkeypatch.setattr(routes.settings, "kdc_port", port)

        response = client.get("/testkdc", params={"kdc": "127.0.0.1"})
    finally:
        listener.close()

    assert response.status_code == 200
    assert "Successfully connected" in response.text


def test_testkdc_failure_is_still_200(client, monkeypatch):
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    monkeypatch.setattr(routes.settings, "kdc_port", port)

    response = client.get("/testkdc", params={"kdc": "127.0.0.1"})

    assert response.status_code == 200
    assert "Failed connection test" in response.text


def test_testkdc_without_host_or_env(client, override):
    override(get_environment, EnvironmentSnapshot({}))

    response = client.get("/testkdc")

    assert response.status_code == 200
    assert response.text == "KRB5_KDC env var is not configured"


# /sidecarhealth and /ticket


def test_sidecar_health_forwards_status_and_body(client):
    response = client.get("/sidecarhealth")

    assert response.status_code == 200
    assert response.text == "Healthy"


@pytest.mark.parametrize("status_code", [503, 500])
def test_sidecar_health_forwards_failure_status(status_code):
    from fastapi.testclient import TestClient

    from app.services.sidecar_client import SidecarClient

    fake = SidecarClient(
        "http://sidecar.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code, text="Degraded")),
    )
    app.dependency_overrides[routes.get_sidecar_client] = lambda: fake
    try:
        with TestClient(app) as test_client:
            response = test_client.get("/sidecarhealth")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status_code
    assert response.text == "Degraded"


def test_ticket_returns_sidecar_body(client, sidecar_requests):
    response = client.get("/ticket", params={"spn": "MSSQLSvc/sql01.example.com:1433"})

    assert response.status_code == 200
    assert response.text == "ticket-for:MSSQLSvc/sql01.example.com:1433"
    assert sidecar_requests[-1].url.path == "/ticket"


def test_ticket_error_is_reported_as_bad_gateway():
    from fastapi.testclient import TestClient

    from app.services.sidecar_client import SidecarClient

    fake = SidecarClient(
        "http://sidecar.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="principal unknown")),
    )
    app.dependency_overrides[routes.get_sidecar_client] = lambda: fake
    try:
        with TestClient(app) as test_client:
            response = test_client.get("/ticket", params={"spn": "HTTP/unknown"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 502
    assert "principal unknown" in response.text


# /env, /run, /diag


def test_env_contains_injected_variable(client, monkeypatch):
    monkeypatch.setenv("KERBEROS_PROBE_TEST_MARKER", "injected")

    response = client.get("/env")

    assert response.status_code == 200
    assert response.json()["KERBEROS_PROBE_TEST_MARKER"] == "injected"


def test_run_echo_returns_output(client):
    response = client.get("/run", params={"command": "echo hello"})

    assert response.status_code == 200
    assert "hello" in response.text


def test_run_nonzero_exit_is_still_200(client):
    response = client.get("/run", params={"command": "ls /definitely/not/here"})

    assert response.status_code == 200
    assert response.text


def test_run_unknown_program_returns_error_text(client):
    response = client.get("/run", params={"command": "no-such-program-for-probe --version"})

    assert response.status_code == 200
    assert "no-such-program-for-probe" in response.text


def test_run_kills_process_that_never_exits(client, override):
    override(routes.get_command_runner, CommandRunner(timeout=0.5))

    started = time.monotonic()
    response = client.get("/run", params={"command": "sleep 60"})

    assert response.status_code == 200
    assert time.monotonic() - started < 15


def test_run_passes_expanded_input(client, override):
    class Spawner:
        calls = []

        def spawn(self, program, args, env, stdin, timeout):
            self.calls.append((program, list(args), stdin))
            return SpawnResult(stdout="done", stderr="", exited_in_time=True)

    spawner = Spawner()
    override(routes.get_command_runner, CommandRunner(spawner=spawner, timeout=1.0))
    override(get_environment, EnvironmentSnapshot({"KRB5_CLIENT_KTNAME": "/k/client.keytab"}))

    response = client.get("/run", params={"command": "ktutil", "input": "read_kt %KRB5_CLIENT_KTNAME%"})

    assert response.text == "done\n"
    assert spawner.calls == [("ktutil", [], "read_kt /k/client.keytab")]


def test_diag_returns_report(client, override):
    class Runner:
        async def run(self, command, input=None, env=None):
            return f"{command} ran"

    override(routes.get_command_runner, Runner())
    override(get_environment, EnvironmentSnapshot({"KRB5CCNAME": "/tmp/krb5cc_missing"}))

    response = client.get("/diag")

    assert response.status_code == 200
    assert "KRB5CCNAME=/tmp/krb5cc_missing" in response.text
    assert "/tmp/krb5cc_missing = missing" in response.text
    assert "klist ran" in response.text
    assert "ktutil ran" in response.text


# /user and /negotiate


def test_user_without_header_returns_guidance(client, override):
    override(get_negotiate_authenticator, FakeAuthenticator())

    response = client.get("/user")

    assert response.status_code == 401
    assert "forceAuth=true" in response.text


def test_user_force_auth_redirects_to_challenge(client, override):
    override(get_negotiate_authenticator, FakeAuthenticator())

    response = client.get("/user", params={"forceAuth": "true"}, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == routes.NEGOTIATE_CHALLENGE_PATH


def test_user_with_failed_negotiation_is_not_logged_in(client, override):
    override(get_negotiate_authenticator, FakeAuthenticator(identity=None))

    response = client.get("/user", headers={"Authorization": "Negotiate YWJj"})

    assert response.status_code == 401
    assert response.text == "Not logged in."


def test_user_returns_identity_and_claims(client, override):
    identity = AuthenticatedIdentity(
        name="alice@EXAMPLE.COM",
        claims=[("name", "alice@EXAMPLE.COM"), ("realm", "EXAMPLE.COM")],
        response_token=b"abc",
    )
    override(get_negotiate_authenticator, FakeAuthenticator(identity=identity))

    response = client.get("/user", headers={"Authorization": "Negotiate YWJj"})

    assert response.status_code == 200
    assert response.json() == {
        "name": "alice@EXAMPLE.COM",
        "claims": [
            {"type": "name", "value": "alice@EXAMPLE.COM"},
            {"type": "realm", "value": "EXAMPLE.COM"},
        ],
    }
    assert response.headers["WWW-Authenticate"] == "Negotiate YWJj"


def test_negotiate_challenge_without_token(client, override):
    override(get_negotiate_authenticator, FakeAuthenticator())

    response = client.get("/negotiate")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Negotiate"


def test_negotiate_challenge_completes_exchange(client, override):
    identity = AuthenticatedIdentity(name="bob@EXAMPLE.COM")
    override(get_negotiate_authenticator, FakeAuthenticator(identity=identity))

    response = client.get("/negotiate", headers={"Authorization": "Negotiate YWJj"})

    assert response.status_code == 200
    assert response.json()["name"] == "bob@EXAMPLE.COM"


@pytest.mark.parametrize("path", ["/user", "/negotiate"])
def test_negotiation_runs_outside_the_event_loop(client, override, path):
    loops = []

    class LoopRecordingAuthenticator(FakeAuthenticator):
        def authenticate(self, authorization):
            try:
                loops.append(asyncio.get_running_loop())
            except RuntimeError:
                loops.append(None)
            return super().authenticate(authorization)

    override(
        get_negotiate_authenticator,
        LoopRecordingAuthenticator(identity=AuthenticatedIdentity(name="carol@EXAMPLE.COM")),
    )

    response = client.get(path, headers={"Authorization": "Negotiate YWJj"})

    assert response.status_code == 200
    assert loops == [None]
