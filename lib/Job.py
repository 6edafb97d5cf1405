"""
Job Definition Module

This module defines the JobEnvelope data structure, the unit of
work carried over the broker and through the delayed job store,
together with its JSON encoding.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import json
import uuid
import dataclasses
from enum import Enum
from datetime import datetime, timezone
from dataclasses import dataclass, field

## import private pkgs
from Errors import MalformedPayloadError

class Priority(Enum):
    """
    Broker priority of a job.
    """

    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'

def new_job_id() -> str:
    return uuid.uuid4().hex

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

@dataclass
class JobEnvelope(object):
    """
    Job envelope definition.

    Attributes:
        task (str):
            Task identifier handed to the dispatcher.

        config (str):
            Name of the broker/store configuration to use.

        args (list):
            Positional task arguments. Defaults to [].

        priority (Priority):
            Broker priority. Defaults to Priority.NORMAL.

        due_at (datetime):
            UTC time the job becomes eligible for dispatch, None
            for immediate dispatch.

        id (str):
            Unique identifier, stable across promotion.
    """

    task: str
    config: str = 'default'
    args: list = field(default_factory = list)
    priority: Priority = Priority.NORMAL
    due_at: datetime = None
    id: str = field(default_factory = new_job_id)

    def __post_init__(self) -> None:
        if self.due_at is not None and self.due_at.tzinfo is None:
            self.due_at = self.due_at.replace(tzinfo = timezone.utc)

    def promoted(self) -> 'JobEnvelope':
        """
        Copy of this envelope ready for immediate dispatch.

        Returns:
            JobEnvelope: Same id, due_at cleared
        """

        return dataclasses.replace(self, due_at = None)

    def encode(self) -> str:
        """
        Encode the envelope as JSON text.

        Returns:
            str: Encoded payload
        """

        return json.dumps({
            'id': self.id,
            'config': self.config,
            'task': self.task,
            'args': list(self.args),
            'priority': self.priority.value,
            'due_at': self.due_at.isoformat() if self.due_at else None,
        })

    @classmethod
    def decode(cls, payload) -> 'JobEnvelope':
        """
        Decode a payload produced by `encode`.

        Args:
            payload (bytes|str): Encoded payload

        Returns:
            JobEnvelope: Decoded envelope

        Raises:
            MalformedPayloadError: Empty or undecodable payload
        """

        if not payload:
            raise MalformedPayloadError('No workload')

        if isinstance(payload, bytes):
            try:
                payload = payload.decode('utf-8')

            except UnicodeDecodeError:
                raise MalformedPayloadError('Invalid workload: not utf-8')

        try:
            data = json.loads(payload)

        except ValueError:
            raise MalformedPayloadError('Invalid workload: %s' % (payload))

        if not isinstance(data, dict):
            raise MalformedPayloadError('Invalid workload: %s' % (payload))

        ## kept so the submitter can still be answered
        job_id = data['id'] if isinstance(data.get('id'), str) and data['id'] else None

        for key in ('id', 'config', 'task'):
            if not isinstance(data.get(key), str) or not data[key]:
                raise MalformedPayloadError('Invalid workload, missing %s: %s' % (key, payload), job_id)

        args = data.get('args', [])
        if not isinstance(args, list):
            raise MalformedPayloadError('Invalid workload, args must be a list: %s' % (payload), job_id)

        try:
            priority = Priority(data.get('priority', Priority.NORMAL.value))
            due_at = datetime.fromisoformat(data['due_at']) if data.get('due_at') else None

        except (TypeError, ValueError) as e:
            raise MalformedPayloadError('Invalid workload, %s: %s' % (e, payload), job_id)

        return cls(
            id = data['id'],
            config = data['config'],
            task = data['task'],
            args = args,
            priority = priority,
            due_at = due_at,
        )
