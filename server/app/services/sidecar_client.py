"""HTTP client for the co-located ticket sidecar."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

HEALTH_PATH = "health/ready"
TICKET_PATH = "ticket"


@dataclass(slots=True)
class SidecarResponse:
    """Status and body returned by the sidecar, passed through untouched."""

    status_code: int
    text: str


class SidecarClient:
    """Thin pass-through to the sidecar's HTTP API.

    No retries and no payload interpretation. The underlying
    :class:`httpx.AsyncClient` uses its default timeout; ``transport`` lets
    tests substitute :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport)

    async def health(self) -> SidecarResponse:
        """Call the sidecar readiness endpoint."""

        response = await self._client.get(HEALTH_PATH)
        logger.info("Sidecar health check returned %s", response.status_code)
        return SidecarResponse(status_code=response.status_code, text=response.text)

    async def get_ticket(self, spn: Optional[str]) -> str:
        """Ask the sidecar for a service ticket for ``spn`` and return its body."""

        response = await self._client.get(TICKET_PATH, params={"spn": spn or ""})
        logger.info("Sidecar ticket request for %r returned %s", spn, response.status_code)
        response.raise_for_status()
        return response.text

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["HEALTH_PATH", "SidecarClient", "SidecarResponse", "TICKET_PATH"]
