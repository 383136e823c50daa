"""Plain-text Kerberos environment report served by /diag."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..core.environment import EnvironmentSnapshot
from .command_runner import CommandRunner, command_runner

logger = logging.getLogger(__name__)

# Variables whose values name files on disk
KRB5_FILE_VARIABLES = ("KRB5_CONFIG", "KRB5CCNAME", "KRB5_KTNAME", "KRB5_CLIENT_KTNAME")

READ_KEYTAB_SCRIPT = "read_kt %KRB5_CLIENT_KTNAME%\nlist\nq"


def _credential_path(value: str) -> str:
    """Strip a ``FILE:`` cache/keytab type prefix so the path can be checked."""

    if value.upper().startswith("FILE:"):
        return value[len("FILE:"):]
    return value


class DiagnosticsService:
    """Assemble the /diag report from the environment, files and Kerberos tools."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self._runner = runner or command_runner

    async def build_report(self, env: EnvironmentSnapshot) -> str:
        lines: List[str] = []

        now = datetime.now()
        lines.append("==== TimeStamps ====")
        lines.append(f"Local time: {now.astimezone().isoformat(sep=' ')}")
        lines.append(f"UTC time: {datetime.now(timezone.utc).isoformat(sep=' ')}")
        lines.append("")

        lines.append("==== KRB5 files ====")
        for name in KRB5_FILE_VARIABLES:
            lines.extend(self._describe_variable(env, name))
        lines.append("")

        krb5_conf = env.get_non_empty("KRB5_CONFIG")
        if krb5_conf:
            lines.append(f"==== {krb5_conf} content ====")
            lines.append(self._read_text(krb5_conf))

        lines.append("=== klist ===")
        lines.append(await self._runner.run("klist", env=env))

        lines.append("==== KRB5_CLIENT_KTNAME keytab contents ===")
        lines.append(await self._runner.run("ktutil", READ_KEYTAB_SCRIPT, env=env))

        return "\n".join(lines) + "\n"

    @staticmethod
    def _describe_variable(env: EnvironmentSnapshot, name: str) -> List[str]:
        value = env.get(name)
        described = [f"{name}={value or ''}"]
        if value:
            exists = Path(_credential_path(value)).is_file()
            described.append(f"{value} = {'exists' if exists else 'missing'}")
        return described

    @staticmethod
    def _read_text(path: str) -> str:
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Unable to read %s: %s", path, exc)
            return f"Unable to read {path}: {exc}"


__all__ = ["DiagnosticsService", "KRB5_FILE_VARIABLES", "READ_KEYTAB_SCRIPT"]
