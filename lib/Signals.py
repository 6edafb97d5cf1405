"""
Signal Registry Module

This module holds the per-process state flags and the mapping from
OS signals to the logical intents understood by the daemon and its
workers.

A signal handler only flips flags on the ProcessFlags object; the
supervision and worker loops read those flags at fixed checkpoints.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import signal
from enum import Enum
from dataclasses import dataclass

class Role(Enum):
    DAEMON = 'Daemon'
    WORKER = 'Worker'
    SCHEDULER = 'Scheduler'
    CLIENT = 'Client'

class Intent(Enum):
    STOP = 'stop'
    RELOAD = 'reload'
    ABORT = 'abort'

class State(Enum):
    RUNNING = 'Running'
    RELOADING = 'Reloading'
    STOPPING = 'Stopping'
    STOPPED = 'Stopped'

## signal a worker sends its supervisor when it could not start serving
ABORT_SIGNAL = signal.SIGUSR1

DAEMON_SIGNALS = {
    signal.SIGTERM: Intent.STOP,
    signal.SIGINT: Intent.STOP,
    signal.SIGHUP: Intent.RELOAD,
    ABORT_SIGNAL: Intent.ABORT,
}

WORKER_SIGNALS = {
    signal.SIGTERM: Intent.STOP,
    signal.SIGINT: Intent.STOP,
}

## reload is only meaningful at the daemon
WORKER_IGNORED = (signal.SIGHUP, )

@dataclass
class ProcessFlags(object):
    """
    Process-wide state, one instance per OS process.

    Attributes:
        running (bool): False once a stop has been requested
        reload_requested (bool): Set by a reload signal, cleared once acted upon
        role (Role): Role of the owning process
        exit_code (int): Terminal exit code of the process
        stopped (bool): Set once shutdown fully completed
    """

    running: bool = True
    reload_requested: bool = False
    role: Role = Role.DAEMON
    exit_code: int = 0
    stopped: bool = False

    @property
    def state(self) -> State:
        if self.stopped:
            return State.STOPPED

        if not self.running:
            return State.STOPPING

        if self.reload_requested:
            return State.RELOADING

        return State.RUNNING

    def apply(self, intent: Intent) -> None:
        """
        Record an intent.

        Args:
            intent (Intent): Intent carried by a signal

        Returns:
            None
        """

        if intent is Intent.STOP:
            self.running = False

        elif intent is Intent.RELOAD:
            ## nothing to reload once stopping
            if self.running:
                self.reload_requested = True

        elif intent is Intent.ABORT:
            self.running = False
            self.reload_requested = False
            self.exit_code = 1

    def reset(self, role: Role) -> None:
        """
        Start over with fresh flags, used by a freshly forked child.

        Args:
            role (Role): Role of the new process

        Returns:
            None
        """

        self.running = True
        self.reload_requested = False
        self.role = role
        self.exit_code = 0
        self.stopped = False

class SignalRegistry(object):
    """
    Install signal handlers translating signals into intents.
    """

    def __init__(self, flags: ProcessFlags, mapping: dict, ignored: tuple = ()) -> None:
        """
        Args:
            flags (ProcessFlags): Flags the handlers write to
            mapping (dict): Signal number to Intent
            ignored (tuple): Signals to ignore

        Returns:
            None
        """

        self.flags = flags
        self.mapping = dict(mapping)
        self.ignored = tuple(ignored)
        self._previous = {}

    def _handle(self, signum, frame) -> None:
        self.flags.apply(self.mapping[signum])

    def install(self) -> None:
        for signum in self.mapping:
            self._previous[signum] = signal.signal(signum, self._handle)

        for signum in self.ignored:
            self._previous[signum] = signal.signal(signum, signal.SIG_IGN)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

        self._previous = {}
