"""
Process Supervisor Module

This module implements the long-lived daemon process owning the
worker pool.

Responsibilities:
- Validate prerequisites and guard the PID record
- Optionally detach into a new session
- Spawn worker processes and reap the ones that exited
- Keep the pool at its desired size within the restart limit
- Perform rolling restarts and orderly shutdown on signals
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import os
import time
import signal
from typing import Callable
from dataclasses import dataclass, field, fields

## import private pkgs
from Signals import ProcessFlags, Role, SignalRegistry, DAEMON_SIGNALS, WORKER_SIGNALS, WORKER_IGNORED
from Errors import ConfigurationError, AlreadyRunningError, NotRunningError, RestartLimitExceededError

## functions the supervisor cannot work without
REQUIRED_FUNCTIONS = ('fork', 'kill', 'setsid', 'waitpid')

@dataclass
class DaemonOptions(object):
    """
    Worker pool options.

    Attributes:
        workers (int): Desired number of workers
        limit (int): Total spawn limit when resuscitating, 0 for unlimited
        resuscitate (bool): Replace workers that exited
        atomic (bool): One job per worker process
        blocking (bool): Workers block on the broker
        daemon (bool): Detach into a background session
        pid (str): PID record location
        interval (float): Supervision loop interval in seconds
        kill_timeout (float): Grace period before a worker is killed
        blocking_kill_timeout (float): Grace period for blocking workers
    """

    workers: int = 4
    limit: int = 8
    resuscitate: bool = False
    atomic: bool = False
    blocking: bool = False
    daemon: bool = False
    pid: str = '/var/run/JobsDaemon.pid'
    interval: float = 0.15
    kill_timeout: float = 30
    blocking_kill_timeout: float = 5

    @classmethod
    def from_config(cls, section: dict, **overrides) -> 'DaemonOptions':
        """
        Build options from the `daemon` configuration section.

        Args:
            section (dict): `daemon` configuration section
            **overrides: Command line values, None means not given

        Returns:
            DaemonOptions: Validated options

        Raises:
            ConfigurationError: Invalid values
        """

        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in (section or {}).items() if k in names}
        values.update({k: v for k, v in overrides.items() if k in names and v is not None})
        options = cls(**values)

        ## atomic mode relies on resuscitation, unlimited unless asked otherwise
        if options.atomic:
            options.resuscitate = True
            if overrides.get('limit') is None:
                options.limit = 0

        if options.workers < 0:
            raise ConfigurationError('Worker count must not be negative')

        if options.limit < 0:
            raise ConfigurationError('Worker limit must not be negative')

        if options.interval <= 0:
            raise ConfigurationError('Supervision interval must be positive')

        return options

@dataclass
class WorkerHandle(object):
    pid: int
    number: int
    started_at: float = field(default_factory = time.time)
    exit_status: int = None

@dataclass
class WorkerPoolState(object):
    """
    Worker pool bookkeeping, owned by the supervisor process.

    Attributes:
        desired_count (int): Target number of live workers
        started_count (int): Workers spawned so far
        active_handles (list): Live workers, oldest first
        refilling (bool): Refill one worker per tick after a reload
    """

    desired_count: int
    started_count: int = 0
    active_handles: list = field(default_factory = list)
    refilling: bool = False

def read_pid(path: str) -> int:
    """
    Read a PID record.

    Args:
        path (str): PID record location

    Returns:
        int: Recorded process id, None if missing or unreadable
    """

    try:
        with open(path, 'r') as fh:
            return int(fh.read().strip())

    except (OSError, ValueError):
        return None

def write_pid(path: str, pid: int) -> None:
    with open(path, 'w') as fh:
        fh.write('%d\n' % (pid))

def remove_pid(path: str, pid: int) -> None:
    ## leave records written by another process alone
    if read_pid(path) == pid:
        os.unlink(path)

def pid_alive(pid: int) -> bool:
    """
    Check whether a process exists.

    Args:
        pid (int): Process id

    Returns:
        bool: True if the process exists
    """

    if not pid or pid <= 0:
        return False

    ## reap it first in case it is our own exited child
    try:
        os.waitpid(pid, os.WNOHANG)

    except ChildProcessError:
        pass

    try:
        os.kill(pid, 0)

    except ProcessLookupError:
        return False

    except PermissionError:
        return True

    return True

class Supervisor(object):
    """
    Worker pool supervisor.
    """

    def __init__(self, logger: object, options: DaemonOptions, worker_main: Callable, flags: ProcessFlags = None, log: object = None, sleep = time.sleep) -> None:
        """
        Initialize the supervisor.

        Args:
            logger (object): Application logger
            options (DaemonOptions): Pool options
            worker_main (callable): Run in each worker child as worker_main(flags, parent_pid), returns the exit code
            flags (ProcessFlags): Flags of this process
            log (Log): Log object, used to retag and flush forked children
            sleep (callable): Sleep function of the supervision loop

        Returns:
            None
        """

        self.logger = logger
        self.options = options
        self.worker_main = worker_main
        self.flags = flags or ProcessFlags(role = Role.DAEMON)
        self.log = log
        self.sleep = sleep
        self.state = WorkerPoolState(desired_count = options.workers)

    ## daemon control

    def check_prerequisites(self) -> None:
        """
        Validate that processes can be created and signalled.

        Returns:
            None

        Raises:
            ConfigurationError: Missing function
        """

        for name in REQUIRED_FUNCTIONS:
            if not hasattr(os, name):
                raise ConfigurationError("Can't find function os.%s" % (name))

    def start(self) -> int:
        """
        Start the daemon.

        Returns:
            int: Exit code for the calling process

        Raises:
            ConfigurationError: Missing prerequisites or unwritable PID location
            AlreadyRunningError: A live daemon is recorded at the PID location
        """

        self.check_prerequisites()

        directory = os.path.dirname(os.path.abspath(self.options.pid))
        if not os.access(directory, os.W_OK):
            raise ConfigurationError("Can't write PID to %s" % (self.options.pid))

        pid = read_pid(self.options.pid)
        if pid and pid != os.getpid() and pid_alive(pid):
            raise AlreadyRunningError('Daemon already started with PID %d' % (pid))

        if not self.options.daemon:
            self.logger.info({'status': 'daemon started', 'pid': os.getpid()})
            return self.run()

        pid = os.fork()
        if pid > 0:
            self.logger.info({'status': 'daemon started', 'pid': pid})
            return 0

        code = 1
        try:
            os.setsid()
            code = self.run()

        except Exception:
            self.logger.exception({'status': 'daemon crashed'})

        finally:
            self._exit(code)

    def shutdown(self) -> None:
        """
        Ask the recorded daemon to stop gracefully.

        Raises:
            NotRunningError: No live daemon recorded
        """

        self.logger.info({'status': 'sending daemon the shutdown signal'})
        self.send_signal(signal.SIGTERM)

    def restart(self) -> None:
        """
        Ask the recorded daemon for a rolling restart.

        Raises:
            NotRunningError: No live daemon recorded
        """

        self.logger.info({'status': 'sending daemon the restart signal'})
        self.send_signal(signal.SIGHUP)

    def send_signal(self, signum: int) -> int:
        """
        Send a signal to the recorded daemon.

        Args:
            signum (int): Signal number

        Returns:
            int: Daemon process id

        Raises:
            NotRunningError: No PID record or the recorded daemon is gone
        """

        self.check_prerequisites()

        if not os.path.exists(self.options.pid):
            raise NotRunningError('No PID found on %s' % (self.options.pid))

        pid = read_pid(self.options.pid)
        if not pid_alive(pid):
            raise NotRunningError('Daemon with PID %s seems to be gone. Delete the %s file manually' % (pid, self.options.pid))

        os.kill(pid, signum)
        return pid

    ## supervision loop

    def run(self) -> int:
        """
        Supervision loop, returns once the daemon stopped.

        Returns:
            int: Exit code of the daemon
        """

        self.flags.reset(Role.DAEMON)
        self._set_role(Role.DAEMON)

        registry = SignalRegistry(self.flags, DAEMON_SIGNALS)
        registry.install()

        try:
            ## recorded once signals are handled
            write_pid(self.options.pid, os.getpid())
            self.start_workers()

            while self.flags.running:
                if self.flags.reload_requested:
                    self.reload_workers()

                else:
                    self.check_workers()

                if self.flags.running:
                    self.sleep(self.options.interval)

            self.logger.info({'status': 'shutting down...', 'exit_code': self.flags.exit_code})
            self.kill_workers(self.state.active_handles)

        finally:
            remove_pid(self.options.pid, os.getpid())
            registry.restore()
            self.flags.stopped = True

        self.logger.info({'status': 'daemon stopped', 'started': self.state.started_count})
        return self.flags.exit_code

    def start_workers(self) -> None:
        if self.state.active_handles:
            self.kill_workers(self.state.active_handles)

        for _ in range(self.state.desired_count):
            if self._spawn() is None:
                break

    def reload_workers(self) -> None:
        """
        Rolling restart: replace every worker, one fresh worker now,
        the rest one per loop iteration.

        Returns:
            None
        """

        self.logger.info({'status': 'restarting...', 'workers': len(self.state.active_handles)})
        self.kill_workers(self.state.active_handles)

        ## cleared after the kill so a repeated request is absorbed
        self.flags.reload_requested = False
        if self.state.desired_count > 0:
            self.state.refilling = True
            self._spawn()

    def check_workers(self) -> None:
        """
        Reap exited workers and reconcile the pool with its desired size.

        Returns:
            None
        """

        alive = []
        for handle in self.state.active_handles:
            if self._poll(handle):
                self.logger.info({'status': 'worker exited', 'pid': handle.pid, 'exit_status': handle.exit_status})

            else:
                alive.append(handle)

        self.state.active_handles = alive
        count = len(alive)
        desired = self.state.desired_count

        if count > desired:
            ## oldest spawned first
            self.kill_workers(alive[:count - desired])

        elif count < desired and self.state.refilling:
            self.logger.info({'status': 'refilling pool', 'alive': count, 'desired': desired})
            self._spawn()

        elif count < desired and self.options.resuscitate:
            for _ in range(desired - count):
                self.logger.info({'status': 'replacing finished worker with a new one'})
                if self._spawn() is None:
                    break

        if len(self.state.active_handles) >= desired:
            self.state.refilling = False

    def resize(self, count: int) -> None:
        self.logger.info({'status': 'resizing pool', 'from': self.state.desired_count, 'to': count})
        self.state.desired_count = count

    ## worker processes

    def spawn_worker(self) -> WorkerHandle:
        """
        Fork one worker.

        Returns:
            WorkerHandle: Handle of the new worker, None if not spawned

        Raises:
            RestartLimitExceededError: Spawn limit reached
        """

        ## a signal may have arrived since the caller looked
        if not self.flags.running:
            return None

        if self.options.resuscitate and self.options.limit > 0 and self.state.started_count >= self.options.limit:
            raise RestartLimitExceededError('Reached the maximum of %d worker restarts' % (self.options.limit))

        ## held until the child installed its own handlers
        mask = signal.pthread_sigmask(signal.SIG_BLOCK, set(DAEMON_SIGNALS))
        try:
            pid = os.fork()

        except OSError as e:
            signal.pthread_sigmask(signal.SIG_SETMASK, mask)
            self.logger.error({'status': 'could not spawn worker', 'error': str(e)})
            return None

        if pid == 0:
            self._worker_process(mask)

        signal.pthread_sigmask(signal.SIG_SETMASK, mask)
        self.state.started_count += 1
        handle = WorkerHandle(pid = pid, number = self.state.started_count)
        self.state.active_handles.append(handle)
        self.logger.info({'status': 'created worker', 'number': handle.number, 'pid': pid})
        return handle

    def _spawn(self) -> WorkerHandle:
        try:
            return self.spawn_worker()

        except RestartLimitExceededError as e:
            self.logger.warning({'status': str(e)})
            self.flags.running = False
            return None

    def _worker_process(self, mask: set) -> None:
        """
        Body of a forked worker, never returns.

        Args:
            mask (set): Signal mask to restore once handlers are installed
        """

        code = 1
        try:
            parent_pid = os.getppid()
            os.setsid()

            self.flags.reset(Role.WORKER)
            self._set_role(Role.WORKER)
            self.state = WorkerPoolState(desired_count = 0)
            SignalRegistry(self.flags, WORKER_SIGNALS, WORKER_IGNORED).install()
            signal.pthread_sigmask(signal.SIG_SETMASK, mask)

            code = self.worker_main(self.flags, parent_pid)

        except SystemExit as e:
            code = e.code if isinstance(e.code, int) else 1

        except Exception:
            self.logger.exception({'status': 'worker crashed'})

        finally:
            self._exit(code)

    def _poll(self, handle: WorkerHandle) -> bool:
        """
        Non-blocking liveness check.

        Args:
            handle (WorkerHandle): Worker to check

        Returns:
            bool: True if the worker exited and was reaped
        """

        try:
            pid, status = os.waitpid(handle.pid, os.WNOHANG)

        except ChildProcessError:
            return True

        if pid == 0:
            return False

        handle.exit_status = os.waitstatus_to_exitcode(status)
        return True

    def _reap(self, handle: WorkerHandle, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._poll(handle):
                return

            time.sleep(0.05)

        self.logger.warning({'status': 'worker ignored the shutdown signal, killing', 'pid': handle.pid})
        self._signal(handle.pid, signal.SIGKILL)
        try:
            _, status = os.waitpid(handle.pid, 0)
            handle.exit_status = os.waitstatus_to_exitcode(status)

        except ChildProcessError:
            pass

    def _signal(self, pid: int, signum: int) -> None:
        try:
            os.kill(pid, signum)

        except ProcessLookupError:
            pass

    def kill_workers(self, handles: list) -> None:
        """
        Terminate workers and wait for their exit.

        Workers get the graceful stop signal first and are killed
        once their grace period is over.

        Args:
            handles (list): Workers to terminate

        Returns:
            None
        """

        handles = list(handles)
        for handle in handles:
            self.logger.info({'status': 'shutting down worker', 'pid': handle.pid})
            self._signal(handle.pid, signal.SIGTERM)

        timeout = self.options.blocking_kill_timeout if self.options.blocking else self.options.kill_timeout
        for handle in handles:
            self._reap(handle, timeout)
            if handle in self.state.active_handles:
                self.state.active_handles.remove(handle)

    def _set_role(self, role: Role) -> None:
        if self.log is not None:
            self.log.set_role(role.value)

    def _exit(self, code: int) -> None:
        if self.log is not None:
            self.log.close()

        os._exit(code)
