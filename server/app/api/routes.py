"""API route handlers."""
import asyncio
import logging
import os
import traceback
from datetime import datetime, timezone
from typing import Dict, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse, PlainTextResponse, RedirectResponse

from ..core.config import APP_VERSION, settings, get_config_validation_result
from ..core.environment import EnvironmentSnapshot, get_environment
from ..core.models import ClaimSummary, HealthResponse, SqlServerInfo, UserDetails
from ..core.negotiate import (
    AuthenticatedIdentity,
    NegotiateAuthenticator,
    get_negotiate_authenticator,
    negotiate_challenge_headers,
)
from ..services.command_runner import CommandRunner, command_runner
from ..services.diagnostics_service import DiagnosticsService
from ..services.kdc_probe import check_kdc
from ..services.sidecar_client import SidecarClient
from ..services.sql_probe import SqlProbe, sql_probe

logger = logging.getLogger(__name__)

NEGOTIATE_CHALLENGE_PATH = "/negotiate"

CONNECTION_STRING_MISSING_MESSAGE = (
    "Connection string not set. Set 'ConnectionStrings__SqlServer' environment variable"
)
AUTHORIZATION_HEADER_MISSING_MESSAGE = (
    "Authorization header not included. "
    "Call with '?forceAuth=true' to force SPNEGO exchange by the browser"
)
NOT_LOGGED_IN_MESSAGE = "Not logged in."

router = APIRouter()


def get_command_runner() -> CommandRunner:
    return command_runner


def get_sql_probe() -> SqlProbe:
    return sql_probe


def get_sidecar_client(request: Request) -> SidecarClient:
    """Return the sidecar client created during application startup."""

    client = getattr(request.app.state, "sidecar_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sidecar client not initialised",
        )
    return client


def _user_details(identity: AuthenticatedIdentity) -> UserDetails:
    return UserDetails(
        name=identity.name,
        claims=[ClaimSummary(type=claim_type, value=value) for claim_type, value in identity.claims],
    )


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint for this service (not the sidecar)."""

    config_result = get_config_validation_result()
    return HealthResponse(
        status="config_error" if config_result and config_result.has_errors else "healthy",
        version=APP_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/sql", response_model=SqlServerInfo, tags=["Probes"])
async def sql_test(
    connection_string: Optional[str] = Query(None, alias="connectionString"),
    probe: SqlProbe = Depends(get_sql_probe),
):
    """
    Test an integrated-authentication connection to SQL Server.

    The connection uses the process's Kerberos credential cache; no user name
    or password is added. For this to work on Linux:

    1. MIT Kerberos (krb5-user) and an ODBC driver for SQL Server are installed.
    2. SQL Server runs under an AD principal with an SPN of the form
       ``MSSQLSvc/<FQDN>``, where FQDN is the reverse DNS name of the server
       address. This may differ from the host name used in the connection string.
    3. ``KRB5_CONFIG`` points at a krb5.conf naming the realm and its KDC.
    4. The credential cache (``KRB5CCNAME``) holds a TGT, e.g. obtained with kinit.
    5. The connection is encrypted; append ``TrustServerCertificate=yes`` for
       certificates the client does not trust.

    Set ``KRB5_TRACE=/dev/stdout`` before starting the service for detailed
    Kerberos tracing.
    """

    if connection_string is None:
        connection_string = settings.sql_connection_string
    if connection_string is None:
        return PlainTextResponse(
            CONNECTION_STRING_MISSING_MESSAGE,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    try:
        return await probe.query_server_info(connection_string)
    except Exception:
        logger.exception("SQL Server probe failed")
        return PlainTextResponse(
            traceback.format_exc(),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


@router.get("/getfile", tags=["Probes"])
async def read_file(file_path: str = Query(..., alias="filePath")):
    """Get the contents of a file on disk."""

    if not os.path.isfile(file_path):
        return PlainTextResponse(
            f"{file_path} not found", status_code=status.HTTP_404_NOT_FOUND
        )

    return FileResponse(
        file_path,
        media_type="application/octet-stream",
        filename=os.path.basename(file_path),
    )


@router.get("/testkdc", response_class=PlainTextResponse, tags=["Probes"])
async def kdc_connection_test(
    kdc: Optional[str] = Query(None),
    env: EnvironmentSnapshot = Depends(get_environment),
):
    """Test the TCP connection to the Kerberos domain controller."""

    return await check_kdc(kdc, env, port=settings.kdc_port)


@router.get("/sidecarhealth", response_class=PlainTextResponse, tags=["Sidecar"])
async def sidecar_health(sidecar: SidecarClient = Depends(get_sidecar_client)):
    """Forward the sidecar readiness status and body."""

    try:
        result = await sidecar.health()
    except httpx.HTTPError as exc:
        logger.error("Sidecar health request failed: %s", exc)
        return PlainTextResponse(
            f"Sidecar request failed: {type(exc).__name__}: {exc}",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
    return PlainTextResponse(result.text, status_code=result.status_code)


@router.get("/diag", response_class=PlainTextResponse, tags=["Diagnostics"])
async def diagnostics(
    env: EnvironmentSnapshot = Depends(get_environment),
    runner: CommandRunner = Depends(get_command_runner),
):
    """Report Kerberos environment variables, files, cached tickets and keytab entries."""

    return await DiagnosticsService(runner).build_report(env)


@router.get("/env", response_model=Dict[str, str], tags=["Diagnostics"])
async def environment_variables(env: EnvironmentSnapshot = Depends(get_environment)):
    """Get all environment variables available to the service."""

    return env.as_dict()


@router.get("/run", response_class=PlainTextResponse, tags=["Diagnostics"])
async def run_command(
    command: str = Query(...),
    input_line: Optional[str] = Query(None, alias="input"),
    env: EnvironmentSnapshot = Depends(get_environment),
    runner: CommandRunner = Depends(get_command_runner),
):
    """Run a command inside the service's environment.

    The command is split on whitespace only. ``input`` is expanded against the
    environment and written to the process as one line.
    """

    return await runner.run(command, input_line, env)


@router.get("/ticket", response_class=PlainTextResponse, tags=["Sidecar"])
async def get_ticket(
    spn: Optional[str] = Query(None),
    sidecar: SidecarClient = Depends(get_sidecar_client),
):
    """Use the sidecar to get a ticket for an arbitrary SPN."""

    try:
        return await sidecar.get_ticket(spn)
    except httpx.HTTPStatusError as exc:
        logger.error("Sidecar ticket request for %r failed with %s", spn, exc.response.status_code)
        return PlainTextResponse(
            f"Sidecar returned {exc.response.status_code}: {exc.response.text}",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
    except httpx.HTTPError as exc:
        logger.error("Sidecar ticket request for %r failed: %s", spn, exc)
        return PlainTextResponse(
            f"Sidecar request failed: {type(exc).__name__}: {exc}",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )


@router.get("/user", response_model=UserDetails, tags=["Identity"])
async def authenticate_user(
    request: Request,
    response: Response,
    force_auth: bool = Query(False, alias="forceAuth"),
    authenticator: NegotiateAuthenticator = Depends(get_negotiate_authenticator),
):
    """
    Authenticate the caller via SPNEGO (Kerberos ticket in the Authorization header).

    ``forceAuth=true`` sends an unauthenticated caller to the Negotiate
    challenge so the browser performs the exchange.
    """

    result = await asyncio.to_thread(
        authenticator.authenticate, request.headers.get("authorization")
    )
    if result.identity is None:
        if force_auth:
            return RedirectResponse(
                url=NEGOTIATE_CHALLENGE_PATH, status_code=status.HTTP_302_FOUND
            )

        if not result.header_present:
            return PlainTextResponse(
                AUTHORIZATION_HEADER_MISSING_MESSAGE,
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        return PlainTextResponse(
            NOT_LOGGED_IN_MESSAGE, status_code=status.HTTP_401_UNAUTHORIZED
        )

    if result.identity.response_token:
        response.headers.update(negotiate_challenge_headers(result.identity.response_token))
    return _user_details(result.identity)


@router.get(NEGOTIATE_CHALLENGE_PATH, response_model=UserDetails, tags=["Identity"])
async def negotiate_challenge(
    request: Request,
    response: Response,
    authenticator: NegotiateAuthenticator = Depends(get_negotiate_authenticator),
):
    """Issue the Negotiate challenge, returning the user once the exchange completes."""

    result = await asyncio.to_thread(
        authenticator.authenticate, request.headers.get("authorization")
    )
    if result.identity is None:
        return PlainTextResponse(
            NOT_LOGGED_IN_MESSAGE,
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers=negotiate_challenge_headers(),
        )

    if result.identity.response_token:
        response.headers.update(negotiate_challenge_headers(result.identity.response_token))
    return _user_details(result.identity)
