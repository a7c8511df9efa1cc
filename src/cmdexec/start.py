"""One-call construction and start of a Cmd."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from .command import Cmd, Pipes

__all__ = ["start_cmd"]

_STDIO_OPTIONS = ("stdin", "stdout", "stderr", "extra_files")


async def start_cmd(
    command: str,
    args: Sequence[str] | Mapping[str, Any] | None = None,
    **options: Any,
) -> Cmd | tuple[Cmd, Pipes | None]:
    """Build a Cmd, start it and return it.

    ``args`` may be omitted, or be the options mapping itself:

        cmd = await start_cmd("sleep", ["1"])
        cmd, pipes = await start_cmd("date", {"stdout": "pipe"})

    Returns:
        the Cmd alone when no stdio option was given, else ``(cmd, pipes)``
    """
    if isinstance(args, Mapping):
        options = {**args, **options}
        args = None

    cmd = Cmd(command, *(args or ()), **options)
    pipes = await cmd.start()

    if any(name in options for name in _STDIO_OPTIONS):
        return cmd, pipes
    return cmd
