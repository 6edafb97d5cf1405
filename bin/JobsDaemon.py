"""
Jobs Daemon Entry Point

This module provides the command line entry point of JobsDaemon.
It is responsible for:

- Loading configuration
- Initializing logging
- Starting, stopping and reloading the worker pool daemon
- Running the delayed job scheduler or a single foreground worker
- Submitting ping jobs and cancelling scheduled jobs
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import re
import os
import sys
import argparse

## Resolve project root directory
workpath = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))

## Extend Python module search path for project libraries
sys.path.append("%s/lib" % (workpath))

## import private pkgs
from Log import Log
from Config import Config
from Worker import Worker
from Dispatcher import Dispatcher
from Scheduler import DelayedJobScheduler
from Supervisor import Supervisor, DaemonOptions
from Client import Client, build_broker, build_store
from Signals import ProcessFlags, Role, SignalRegistry, WORKER_SIGNALS, WORKER_IGNORED
from Errors import JobsDaemonError

class JobsDaemon(object):
    """
    Core Jobs Daemon controller.

    This class bootstraps configuration and logging, then runs
    the requested command.
    """

    def __init__(self, args: argparse.Namespace) -> None:
        """
        Initialize the runtime environment.

        Args:
            args (argparse.Namespace): Parsed command line

        Returns:
            None
        """

        self.args = args

        ## set private values
        self.config = Config(workpath, args.env).config
        self.config['workpath'] = workpath
        self.config['pid'] = os.getpid()
        self.config['pname'] = os.path.basename(__file__)
        self.config['name'] = re.sub(r'\..*$', '', self.config['pname'])

        ## logger init
        self.loggerObj = Log(self.config, verbose = args.verbose)
        self.logger = self.loggerObj.logger
        self.logger.debug({'command': args.command, 'env': self.config['env']})

    def _options(self) -> DaemonOptions:
        return DaemonOptions.from_config(
            self.config.get('daemon'),
            workers = getattr(self.args, 'workers', None),
            limit = getattr(self.args, 'limit', None),
            resuscitate = getattr(self.args, 'resuscitate', None),
            atomic = getattr(self.args, 'atomic', None),
            blocking = getattr(self.args, 'blocking', None),
            daemon = getattr(self.args, 'daemon', None),
            pid = getattr(self.args, 'pid', None),
        )

    def _worker(self, flags: ProcessFlags, parent_pid: int = None, atomic: bool = False, blocking: bool = False) -> Worker:
        section = self.config.get('worker') or {}
        return Worker(
            self.logger,
            build_broker(self.logger, self.config, self.args.config),
            Dispatcher(self.logger, self.config),
            flags,
            atomic = atomic,
            blocking = blocking,
            parent_pid = parent_pid,
            poll_interval = section.get('poll_interval', 0.05),
            block_timeout = section.get('block_timeout', 1),
            reconnect_interval = section.get('reconnect_interval', 5),
        )

    def start(self) -> int:
        options = self._options()

        ## fail at start on a broken configuration
        build_broker(self.logger, self.config, self.args.config)

        def worker_main(flags, parent_pid):
            return self._worker(flags, parent_pid, options.atomic, options.blocking).run()

        supervisorObj = Supervisor(self.logger, options, worker_main, log = self.loggerObj)
        code = supervisorObj.start()
        if options.daemon:
            print('Daemon started')

        return code

    def shutdown(self) -> int:
        Supervisor(self.logger, self._options(), None).shutdown()
        return 0

    def restart(self) -> int:
        Supervisor(self.logger, self._options(), None).restart()
        return 0

    def ping(self) -> int:
        self.loggerObj.set_role(Role.CLIENT.value)
        timeout = (self.config.get('ping') or {}).get('timeout', 10)
        if Client(self.logger, self.config, self.args.config).ping(self.args.delay, timeout):
            print('pong')
            return 0

        print('No worker answered', file = sys.stderr)
        return 1

    def scheduler(self) -> int:
        interval = self.args.interval
        if interval is None:
            interval = (self.config.get('scheduler') or {}).get('interval', 10)

        schedulerObj = DelayedJobScheduler(
            self.logger,
            build_store(self.logger, self.config, self.args.config),
            build_broker(self.logger, self.config, self.args.config),
            self.args.config,
            log = self.loggerObj,
        )
        schedulerObj.serve_forever(interval)
        return 0

    def work(self) -> int:
        self.loggerObj.set_role(Role.WORKER.value)
        flags = ProcessFlags(role = Role.WORKER)
        registry = SignalRegistry(flags, WORKER_SIGNALS, WORKER_IGNORED)
        registry.install()
        try:
            return self._worker(flags, atomic = self.args.atomic, blocking = self.args.blocking).run()

        finally:
            registry.restore()

    def cancel(self) -> int:
        self.loggerObj.set_role(Role.CLIENT.value)
        if Client(self.logger, self.config, self.args.config).cancel(self.args.job_id):
            return 0

        print('No scheduled job %s' % (self.args.job_id), file = sys.stderr)
        return 1

    def run(self) -> int:
        """
        Run the selected command.

        Returns:
            int: Process exit code
        """

        return getattr(self, self.args.command)()

def parse_args(argv: list = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog = 'JobsDaemon', description = 'Worker pool daemon and delayed job scheduler')
    parser.add_argument('--env', default = None, help = 'configuration environment override')
    parser.add_argument('--verbose', action = 'store_true', help = 'print log records on the console')
    commands = parser.add_subparsers(dest = 'command', required = True)

    start = commands.add_parser('start', help = 'start the worker pool')
    start.add_argument('config', nargs = '?', default = 'default')
    start.add_argument('--blocking', action = 'store_true', default = None)
    start.add_argument('--daemon', action = 'store_true', default = None)
    start.add_argument('--workers', type = int, default = None)
    start.add_argument('--limit', type = int, default = None, help = '0 for unlimited')
    start.add_argument('--resuscitate', action = 'store_true', default = None)
    start.add_argument('--atomic', action = 'store_true', default = None, help = 'one job per worker process')
    start.add_argument('--pid', default = None)

    for name, text in (('shutdown', 'stop the running daemon'), ('restart', 'rolling restart of the running daemon')):
        command = commands.add_parser(name, help = text)
        command.add_argument('--pid', default = None)

    ping = commands.add_parser('ping', help = 'check that a worker answers')
    ping.add_argument('config', nargs = '?', default = 'default')
    ping.add_argument('delay', nargs = '?', type = float, default = 0)

    scheduler = commands.add_parser('scheduler', help = 'promote due delayed jobs')
    scheduler.add_argument('interval', nargs = '?', type = float, default = None)
    scheduler.add_argument('config', nargs = '?', default = 'default')

    work = commands.add_parser('work', help = 'run one worker in the foreground')
    work.add_argument('config', nargs = '?', default = 'default')
    work.add_argument('--blocking', action = 'store_true')
    work.add_argument('--atomic', action = 'store_true')

    cancel = commands.add_parser('cancel', help = 'remove a scheduled job')
    cancel.add_argument('job_id')
    cancel.add_argument('config', nargs = '?', default = 'default')

    return parser.parse_args(argv)

def main(argv: list = None) -> int:
    """
    Application entry point.

    Args:
        argv (list): Command line arguments, defaults to sys.argv

    Returns:
        int: Process exit code
    """

    args = parse_args(argv)
    try:
        return JobsDaemon(args).run()

    except JobsDaemonError as e:
        print('%s: %s' % (e.__class__.__name__, e), file = sys.stderr)
        return 1

if __name__ == "__main__":
    """
    Command-line entry point.

    This function is executed only when the module is run as a
    script. It will not be executed when the module is imported.
    """

    sys.exit(main())
