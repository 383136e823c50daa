"""SPNEGO (HTTP Negotiate) authentication backed by GSSAPI.

Only the acceptor side is implemented here; ticket validation itself is done
by the platform's GSSAPI library using the keytab named by ``KRB5_KTNAME``.
The negotiated identity lives only for the duration of the request.
"""
from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import settings

logger = logging.getLogger(__name__)

NEGOTIATE_SCHEME = "Negotiate"

# Claim types mirror the identity claim URIs Windows-integrated stacks emit
NAME_CLAIM = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name"
AUTHENTICATION_METHOD_CLAIM = "http://schemas.microsoft.com/ws/2008/06/identity/claims/authenticationmethod"
REALM_CLAIM = "http://schemas.microsoft.com/ws/2008/06/identity/claims/realm"


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Principal established by a completed Negotiate exchange."""

    name: str
    claims: List[Tuple[str, str]] = field(default_factory=list)
    response_token: Optional[bytes] = None


@dataclass(frozen=True)
class NegotiateResult:
    """Outcome of inspecting a request's Authorization header."""

    identity: Optional[AuthenticatedIdentity] = None
    header_present: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None


def negotiate_challenge_headers(token: Optional[bytes] = None) -> Dict[str, str]:
    """Build the WWW-Authenticate header for a challenge or mutual-auth reply."""

    if token:
        return {"WWW-Authenticate": f"{NEGOTIATE_SCHEME} {base64.b64encode(token).decode('ascii')}"}
    return {"WWW-Authenticate": NEGOTIATE_SCHEME}


def _extract_negotiate_token(authorization: str) -> Optional[bytes]:
    """Return the decoded SPNEGO token, or None for other schemes or bad base64."""

    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != NEGOTIATE_SCHEME.lower() or not credentials.strip():
        return None
    try:
        return base64.b64decode(credentials.strip(), validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Negotiate token is not valid base64")
        return None


def _build_claims(principal: str) -> List[Tuple[str, str]]:
    claims = [
        (NAME_CLAIM, principal),
        (AUTHENTICATION_METHOD_CLAIM, NEGOTIATE_SCHEME),
    ]
    if "@" in principal:
        claims.append((REALM_CLAIM, principal.rsplit("@", 1)[1]))
    return claims


class NegotiateAuthenticator:
    """Validate ``Authorization: Negotiate`` tokens with a GSSAPI acceptor."""

    def __init__(self, service_principal: Optional[str] = None):
        self._service_principal = service_principal

    @property
    def service_principal(self) -> Optional[str]:
        return self._service_principal or settings.negotiate_service_principal

    def authenticate(self, authorization: Optional[str]) -> NegotiateResult:
        """Accept the SPNEGO token carried by ``authorization``, if any."""

        if authorization is None:
            return NegotiateResult(header_present=False)

        token = _extract_negotiate_token(authorization)
        if token is None:
            logger.info("Authorization header present but carries no Negotiate token")
            return NegotiateResult(header_present=True)

        try:
            identity = self._accept(token)
        except ImportError as exc:
            logger.error("GSSAPI bindings unavailable; cannot accept Negotiate token: %s", exc)
            return NegotiateResult(header_present=True)
        except Exception:
            logger.exception("Negotiate token validation failed")
            return NegotiateResult(header_present=True)

        return NegotiateResult(identity=identity, header_present=True)

    def _accept(self, token: bytes) -> Optional[AuthenticatedIdentity]:
        import gssapi

        creds = None
        if self.service_principal:
            acceptor_name = gssapi.Name(
                self.service_principal,
                name_type=gssapi.NameType.hostbased_service,
            )
            creds = gssapi.Credentials(name=acceptor_name, usage="accept")

        context = gssapi.SecurityContext(creds=creds, usage="accept")
        response_token = context.step(token)

        if not context.complete:
            logger.warning("Negotiate exchange requires further legs; only Kerberos is supported")
            return None

        principal = str(context.initiator_name)
        logger.info("Negotiate authentication succeeded for %s", principal)
        return AuthenticatedIdentity(
            name=principal,
            claims=_build_claims(principal),
            response_token=response_token,
        )


negotiate_authenticator = NegotiateAuthenticator()


def get_negotiate_authenticator() -> NegotiateAuthenticator:
    """FastAPI dependency returning the process-wide authenticator."""

    return negotiate_authenticator


__all__ = [
    "AuthenticatedIdentity",
    "NEGOTIATE_SCHEME",
    "NegotiateAuthenticator",
    "NegotiateResult",
    "get_negotiate_authenticator",
    "negotiate_authenticator",
    "negotiate_challenge_headers",
]
