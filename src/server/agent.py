"""Node agent invocation.

The node agent is the external `pg-node` executable that performs the
actual maintenance work. Handlers talk to it through the NodeAgent
interface so tests can substitute a fake.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from common import first_line, run_command, strip_ansi

logger = logging.getLogger(__name__)

# Region name -> geofiles flag
GEOFILES_REGIONS = {
    "iran": "--iran",
    "russia": "--russia",
    "china": "--china",
}


class DependencyError(Exception):
    """A required external tool is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} not installed on server")


@dataclass
class CommandOutcome:
    """Exit status and captured output of one agent invocation."""

    exit_code: int
    output: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def diagnostic(self) -> str:
        """First line of the output with color codes removed."""
        return first_line(strip_ansi(self.output))


class NodeAgent(Protocol):
    """Operations the control plane can trigger on the node."""

    def update(self) -> CommandOutcome: ...

    def core_update(self, version: str) -> CommandOutcome: ...

    def geofiles(self, region: str) -> CommandOutcome: ...


class SubprocessNodeAgent:
    """NodeAgent backed by the node agent executable."""

    def __init__(self, binary: str = "pg-node", timeout: Optional[float] = None):
        """Initialize agent.

        Args:
            binary: Agent executable name or path
            timeout: Seconds before an invocation is abandoned (None waits forever)
        """
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str) -> CommandOutcome:
        cmd = [self.binary, *args]
        try:
            rc, out, _ = run_command(cmd, timeout=self.timeout, merge_stderr=True)
        except FileNotFoundError:
            raise DependencyError(self.binary)
        if rc != 0:
            logger.warning("%s exited with code %d", " ".join(cmd), rc)
        return CommandOutcome(exit_code=rc, output=out)

    def update(self) -> CommandOutcome:
        logger.info("Executing %s update", self.binary)
        return self._run("update", "--no-update-service")

    def core_update(self, version: str) -> CommandOutcome:
        logger.info("Executing %s core-update with version: %s", self.binary, version)
        return self._run("core-update", "--version", version)

    def geofiles(self, region: str) -> CommandOutcome:
        flag = GEOFILES_REGIONS[region]
        logger.info("Executing %s geofiles %s", self.binary, flag)
        return self._run("geofiles", flag)
