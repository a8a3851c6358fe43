"""Fire-and-forget launch of a sibling bridge instance."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from .errors import ProcessSpawnError

logger = logging.getLogger(__name__)


def sibling_command(args: Sequence[str] = ()) -> list[str]:
    """Command line that starts another codebridge instance."""
    executable = shutil.which("codebridge")
    if executable:
        return [executable, *args]
    return [sys.executable, "-m", "codebridge.engine.cli", *args]


def launch_sibling(
    work_dir: str,
    args: Sequence[str] = (),
    env_overrides: Mapping[str, str] | None = None,
) -> int:
    """Start a detached codebridge process in *work_dir*.

    The child inherits stdio and the environment (plus *env_overrides*)
    and runs in its own session. Nothing tracks it afterwards; the pid
    is returned for logging only.

    Raises:
        ProcessSpawnError: If *work_dir* is missing or exec fails.
    """
    cwd = Path(work_dir).expanduser()
    command = sibling_command(args)
    if not cwd.is_dir():
        raise ProcessSpawnError(" ".join(command), f"no such directory: {cwd}")

    env = dict(os.environ)
    if env_overrides:
        env.update(env_overrides)
    env["CODEBRIDGE_WORK_DIR"] = str(cwd.resolve())

    try:
        proc = subprocess.Popen(
            command,
            cwd=str(cwd),
            env=env,
            start_new_session=True,
        )
    except OSError as exc:
        raise ProcessSpawnError(" ".join(command), str(exc)) from exc

    logger.info(
        "Launched sibling pid=%d cwd=%s overrides=%s",
        proc.pid, cwd, ", ".join(sorted(env_overrides or {})) or "-",
    )
    return proc.pid
