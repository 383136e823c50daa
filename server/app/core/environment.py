"""Read-only snapshot of the process environment handed to each probe."""
from __future__ import annotations

import os
import re
from typing import Dict, Iterator, Mapping, Optional

# %NAME% references, as used by the keytab script fed to ktutil
_VARIABLE_REFERENCE = re.compile(r"%([A-Za-z_][A-Za-z0-9_]*)%")


class EnvironmentSnapshot(Mapping[str, str]):
    """Immutable copy of environment variables captured at request time."""

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    @classmethod
    def capture(cls, source: Optional[Mapping[str, str]] = None) -> "EnvironmentSnapshot":
        """Copy ``source`` (the live process environment by default)."""

        return cls(os.environ if source is None else source)

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"EnvironmentSnapshot({len(self._values)} variables)"

    def get_non_empty(self, name: str) -> Optional[str]:
        """Return the variable value, treating an empty string as unset."""

        value = self._values.get(name)
        return value if value else None

    def as_dict(self) -> Dict[str, str]:
        """Return a mutable copy suitable for passing to a child process."""

        return dict(self._values)

    def expand(self, text: str) -> str:
        """Expand ``%NAME%`` references in ``text`` in a single pass.

        Unknown variables are left exactly as written. Substituted values are
        not rescanned, and shell-style ``$NAME`` is passed through for the child.
        """

        def _substitute(match: re.Match) -> str:
            return self._values.get(match.group(1), match.group(0))

        return _VARIABLE_REFERENCE.sub(_substitute, text)


def get_environment() -> EnvironmentSnapshot:
    """FastAPI dependency returning a fresh snapshot for the current request."""

    return EnvironmentSnapshot.capture()


__all__ = ["EnvironmentSnapshot", "get_environment"]
