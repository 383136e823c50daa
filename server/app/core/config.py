"""Configuration management using Pydantic settings."""

from typing import Optional, TYPE_CHECKING

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_VERSION = "1.0.0"

# Well-known Kerberos port probed by /testkdc
DEFAULT_KDC_PORT = 88

# Upper bound on how long /run waits for a child process to exit
DEFAULT_COMMAND_TIMEOUT_SECONDS = 15.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application settings
    app_name: str = "Kerberos Probe"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # Base URL of the co-located ticket sidecar. Required at startup.
    sidecar_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SidecarUrl", "SIDECAR_URL"),
    )

    # Fallback for /sql when no connectionString is supplied
    sql_connection_string: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "ConnectionStrings__SqlServer",
            "ConnectionStrings:SqlServer",
            "SQL_CONNECTION_STRING",
        ),
    )

    # Probe settings
    kdc_port: int = DEFAULT_KDC_PORT
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS

    # Acceptor name for SPNEGO, e.g. HTTP@web.example.com. When unset the
    # default acceptor credentials from KRB5_KTNAME are used.
    negotiate_service_principal: Optional[str] = None

    def get_sidecar_url(self) -> Optional[str]:
        """Return the configured sidecar URL without surrounding whitespace."""

        if not self.sidecar_url or not self.sidecar_url.strip():
            return None
        return self.sidecar_url.strip()


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
