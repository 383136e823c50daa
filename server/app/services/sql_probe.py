"""SQL Server connectivity probe using the process's ambient Kerberos identity."""
from __future__ import annotations

import asyncio
import logging
from contextlib import closing
from typing import Any, Callable, Optional

from ..core.models import SqlServerInfo

logger = logging.getLogger(__name__)

SERVER_INFO_QUERY = "SELECT @@servername AS Server, @@version AS Version, DB_NAME() AS [Database]"


class SqlProbeError(RuntimeError):
    """Raised when the server info query does not return exactly one row."""


def _pyodbc_connect(connection_string: str) -> Any:
    # Imported on use so a host without an ODBC driver manager can still serve
    # the other probes; the import error becomes the /sql failure text.
    import pyodbc

    return pyodbc.connect(connection_string)


class SqlProbe:
    """Run one read-only identity query against SQL Server.

    The connection string is used verbatim; integrated authentication must
    come from the connection string (``Trusted_Connection=yes``) and the
    Kerberos credential cache, never from embedded secrets.
    """

    def __init__(self, connect: Optional[Callable[[str], Any]] = None):
        self._connect = connect or _pyodbc_connect

    async def query_server_info(self, connection_string: str) -> SqlServerInfo:
        return await asyncio.to_thread(self._query_server_info, connection_string)

    def _query_server_info(self, connection_string: str) -> SqlServerInfo:
        logger.info("Opening SQL Server connection for server info probe")
        with closing(self._connect(connection_string)) as connection:
            with closing(connection.cursor()) as cursor:
                cursor.execute(SERVER_INFO_QUERY)
                rows = cursor.fetchall()

        if len(rows) != 1:
            raise SqlProbeError(
                f"Expected exactly one row from server info query, got {len(rows)}"
            )

        server, version, database = rows[0][0], rows[0][1], rows[0][2]
        logger.info("Connected to SQL Server %s (database %s)", server, database)
        return SqlServerInfo(
            connection_string=connection_string,
            server=str(server or ""),
            database=str(database or ""),
            version=str(version or ""),
        )


# Global service instance
sql_probe = SqlProbe()

__all__ = ["SERVER_INFO_QUERY", "SqlProbe", "SqlProbeError", "sql_probe"]
