"""Common utilities shared by the server and the CLI."""

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# SGR color sequences emitted by the node agent
ANSI_ESCAPE = re.compile(r'\x1b\[[0-9;]*m')


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    merge_stderr: bool = False,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    With merge_stderr, stderr is interleaved into stdout (like 2>&1) and the
    returned stderr is empty. A timeout of None waits forever.

    Raises:
        FileNotFoundError: If the executable does not exist
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            text=True,
            errors='replace',
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'


def strip_ansi(text: str) -> str:
    """Remove ANSI color codes from text."""
    return ANSI_ESCAPE.sub('', text)


def first_line(text: str) -> str:
    """Return the first line of text, or '' when there is none."""
    lines = text.splitlines()
    return lines[0] if lines else ''
