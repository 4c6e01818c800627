"""Process exit codes returned by ``davsync`` commands."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every command.

    ``VALIDATION`` covers bad input and cancelled or rejected credentials,
    ``ENVIRONMENT`` local state or filesystem problems, and ``PROVIDER``
    failures reported by the server or the network on the way to it.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


__all__ = ["ExitCode"]
