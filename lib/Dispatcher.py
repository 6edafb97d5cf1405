"""
Job Dispatch Module

This module turns a task identifier and an argument list into an
executed result. Tasks are looked up, in order, among the built-in
tasks, the `tasks` mapping of the job's configuration, and finally
as an importable `module:attribute` path.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import importlib
import subprocess

## import private pkgs
from Config import Config
from Errors import DispatchError, ConfigurationError

def ping() -> str:
    return 'pong'

def echo(*args) -> list:
    return list(args)

def run_command(cmd: str, timeout: int = 60) -> int:
    """
    Execute a shell command.

    Output is discarded when the command ends with `&> /dev/null`.

    Args:
        cmd (str): Shell command to execute
        timeout (int): Execution timeout in seconds

    Returns:
        int: Exit code of the command

    Raises:
        DispatchError: The command timed out
    """

    kwargs = {}
    if cmd.endswith('&> /dev/null'):
        cmd = cmd.removesuffix('&> /dev/null').strip()
        kwargs = {'stdout': subprocess.DEVNULL, 'stderr': subprocess.DEVNULL}

    try:
        completed = subprocess.run(cmd, shell = True, timeout = timeout, **kwargs)

    except subprocess.TimeoutExpired as e:
        raise DispatchError('timeout: %s' % (e))

    return completed.returncode

BUILTIN_TASKS = {
    'ping': ping,
    'echo': echo,
    'command': run_command,
}

class Dispatcher(object):
    """
    Resolve task identifiers into callables and run them.
    """

    def __init__(self, logger: object, config: dict) -> None:
        """
        Args:
            logger (object): Application logger
            config (dict): Configuration document

        Returns:
            None
        """

        self.logger = logger
        self.config = config
        self._cache = {}

    def resolve(self, config_name: str, task: str):
        """
        Resolve a task identifier.

        Args:
            config_name (str): Configuration the job was submitted under
            task (str): Task identifier

        Returns:
            callable: Invocable task

        Raises:
            DispatchError: Task cannot be resolved
        """

        key = (config_name, task)
        if key in self._cache:
            return self._cache[key]

        if task in BUILTIN_TASKS:
            target = BUILTIN_TASKS[task]

        else:
            try:
                tasks = Config.section(self.config, config_name).get('tasks') or {}

            except ConfigurationError as e:
                raise DispatchError(str(e))

            target = self._import(tasks.get(task, task))

        self._cache[key] = target
        return target

    @staticmethod
    def _import(path: str):
        if ':' in path:
            module_name, _, attr = path.partition(':')

        else:
            module_name, _, attr = path.rpartition('.')

        if not module_name or not attr:
            raise DispatchError('Unknown task "%s"' % (path))

        try:
            target = importlib.import_module(module_name)
            for part in attr.split('.'):
                target = getattr(target, part)

        except (ImportError, AttributeError) as e:
            raise DispatchError('Unknown task "%s": %s' % (path, e))

        if not callable(target):
            raise DispatchError('Task "%s" is not callable' % (path))

        return target

    def execute(self, config_name: str, task: str, args: list):
        """
        Run a task.

        Args:
            config_name (str): Configuration the job was submitted under
            task (str): Task identifier
            args (list): Positional arguments

        Returns:
            object: Task result

        Raises:
            DispatchError: Task cannot be resolved or raised
        """

        target = self.resolve(config_name, task)
        self.logger.debug({'status': 'executing task', 'config': config_name, 'task': task})
        try:
            return target(*args)

        except DispatchError:
            raise

        except Exception as e:
            raise DispatchError('Task "%s" failed: %s: %s' % (task, e.__class__.__name__, e)) from e
