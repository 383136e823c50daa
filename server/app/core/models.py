"""Data models for the application."""
from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class SqlServerInfo(BaseModel):
    """Server identity reported by the database probe."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    connection_string: str = Field(..., alias="connectionString")
    server: str = Field(..., description="Result of @@servername")
    database: str = Field(..., description="Result of DB_NAME()")
    version: str = Field(..., description="Result of @@version")


class ClaimSummary(BaseModel):
    """A single claim attached to the negotiated identity."""

    type: str
    value: str


class UserDetails(BaseModel):
    """Authenticated principal echoed by /user."""

    name: str
    claims: List[ClaimSummary] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
