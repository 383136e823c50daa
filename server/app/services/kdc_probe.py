"""TCP reachability check for the Kerberos key distribution center."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..core.config import DEFAULT_KDC_PORT
from ..core.environment import EnvironmentSnapshot

logger = logging.getLogger(__name__)

KDC_NOT_CONFIGURED_MESSAGE = "KRB5_KDC env var is not configured"


async def check_kdc(
    kdc: Optional[str],
    env: EnvironmentSnapshot,
    port: int = DEFAULT_KDC_PORT,
) -> str:
    """Open a TCP connection to ``kdc`` and describe the outcome.

    Falls back to ``KRB5_KDC`` when no host is given. Always returns a
    message; connection failures are reported in the text.
    """

    if not kdc:
        kdc = env.get_non_empty("KRB5_KDC")
        if not kdc:
            return KDC_NOT_CONFIGURED_MESSAGE

    writer = None
    try:
        _, writer = await asyncio.open_connection(kdc, port)
    except Exception as exc:
        logger.warning("KDC connection test to %s:%d failed: %s", kdc, port, exc)
        return f"Failed connection test to {kdc} on port {port}\n{type(exc).__name__}: {exc}"
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                logger.debug("Error while closing KDC test connection", exc_info=True)

    logger.info("KDC connection test to %s:%d succeeded", kdc, port)
    return f"Successfully connected to {kdc} on port {port}"


__all__ = ["KDC_NOT_CONFIGURED_MESSAGE", "check_kdc"]
