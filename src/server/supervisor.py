"""TLS terminator supervision.

Keeps exactly one terminator bound to the control-plane port. Whenever the
terminator exits, for any reason, it is started again after a short delay;
there is no limit on the number of restarts. State machine:

    STARTING -> LISTENING -> (exit) -> BACKOFF -> STARTING

Only a configuration error on the very first start is fatal.
"""

import enum
import logging
import threading
from typing import Callable, Optional, Protocol

from config import ConfigError

logger = logging.getLogger(__name__)

# Delay after a terminator that was listening exits
RESTART_DELAY = 1.0
# Delay after a terminator that failed to start
FAILURE_DELAY = 5.0


class State(enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class TerminatorError(Exception):
    """The terminator could not start or exited abnormally."""


class Terminator(Protocol):
    """A TLS endpoint that hands each client session to the connection handler."""

    def run(self, on_listening: Callable[[], None]) -> None:
        """Listen until the terminator exits; call on_listening once bound."""

    def stop(self) -> None:
        """Make a running run() return."""


class Supervisor:
    """Restarts the TLS terminator whenever it exits."""

    def __init__(
        self,
        terminator_factory: Callable[[], Terminator],
        restart_delay: float = RESTART_DELAY,
        failure_delay: float = FAILURE_DELAY,
    ):
        self.terminator_factory = terminator_factory
        self.restart_delay = restart_delay
        self.failure_delay = failure_delay
        self.state = State.STOPPED
        self.starts = 0
        self.failures = 0
        self.stopping = False
        self._wakeup = threading.Event()
        self._lock = threading.Lock()
        self._terminator: Optional[Terminator] = None

    def _on_listening(self):
        self.state = State.LISTENING
        logger.info("TLS terminator listening, waiting for connections...")

    def run_once(self) -> float:
        """Start one terminator and wait for it to exit.

        Returns:
            Seconds to back off before the next start

        Raises:
            ConfigError: On a configuration error during the first start
        """
        self.state = State.STARTING
        self.starts += 1
        try:
            terminator = self.terminator_factory()
            with self._lock:
                self._terminator = terminator
            if self.stopping:
                return 0.0
            terminator.run(self._on_listening)
        except ConfigError as e:
            if self.starts == 1:
                raise
            logger.error("TLS terminator failed to start: %s", e)
            return self._failed()
        except Exception as e:
            if self.state is State.LISTENING:
                logger.error("TLS terminator crashed: %s", e)
                return self.restart_delay
            logger.error("Failed to start TLS terminator: %s", e)
            return self._failed()
        finally:
            with self._lock:
                self._terminator = None

        if self.state is State.LISTENING:
            logger.info("TLS terminator exited, restarting...")
            return self.restart_delay
        logger.warning("TLS terminator exited before listening")
        return self._failed()

    def _failed(self) -> float:
        self.failures += 1
        logger.info("Retrying in %g seconds...", self.failure_delay)
        return self.failure_delay

    def run(self):
        """Supervise until stop() is called. Never returns otherwise."""
        while not self.stopping:
            delay = self.run_once()
            if self.stopping:
                break
            self.state = State.BACKOFF
            self._wakeup.wait(delay)
            self._wakeup.clear()
        self.state = State.STOPPED

    def restart(self):
        """Stop the running terminator; run() starts a fresh one."""
        with self._lock:
            terminator = self._terminator
        if terminator is not None:
            terminator.stop()

    def stop(self):
        """Stop supervising and stop the running terminator."""
        self.stopping = True
        self._wakeup.set()
        self.restart()
