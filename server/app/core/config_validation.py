"""Configuration validation utilities."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)
from .environment import EnvironmentSnapshot


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(
    force: bool = False, env: Optional[EnvironmentSnapshot] = None
) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    env = env if env is not None else EnvironmentSnapshot.capture()
    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    if not settings.get_sidecar_url():
        _error(
            result,
            "Sidecar URL not set.",
            "Set the SidecarUrl environment variable to the base URL of the ticket sidecar.",
        )

    if not settings.sql_connection_string:
        _warn(
            result,
            "No SQL Server connection string configured.",
            "Set ConnectionStrings__SqlServer or pass connectionString to /sql.",
        )

    if not env.get_non_empty("KRB5_KDC"):
        _warn(
            result,
            "KRB5_KDC is not set.",
            "Set KRB5_KDC or pass kdc to /testkdc.",
        )

    krb5_config = env.get_non_empty("KRB5_CONFIG")
    if not krb5_config:
        _warn(
            result,
            "KRB5_CONFIG is not set; the system default krb5.conf will be used.",
            "Point KRB5_CONFIG at the MIT Kerberos configuration file for the realm.",
        )
    elif not os.path.isfile(krb5_config):
        _warn(
            result,
            f"KRB5_CONFIG points to a missing file: {krb5_config}",
            "Mount the Kerberos configuration file or correct KRB5_CONFIG.",
        )

    if not settings.negotiate_service_principal:
        _warn(
            result,
            "NEGOTIATE_SERVICE_PRINCIPAL is not set; default acceptor credentials will be used.",
            "Set NEGOTIATE_SERVICE_PRINCIPAL (e.g. HTTP@web.example.com) to pin the SPNEGO acceptor.",
        )

    set_config_validation_result(result)
    return result
