"""
Delayed Job Store Module

This module persists jobs scheduled for a future time in a MySQL
table (any SQLAlchemy database works) ordered by due time, ties
broken by insertion order.

Claiming a job deletes its row inside a transaction that is only
committed once the caller has handed the job over to the broker,
so a job is never visible in both the store and the broker queue.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import time
from contextlib import contextmanager
from urllib.parse import quote_plus

## import 3rd pkgs
from sqlalchemy import (
    Column, Float, Integer, MetaData, String, Table, Text,
    create_engine, delete, func, select,
)

## import private pkgs
from Job import JobEnvelope
from Errors import InvalidArgumentError, MalformedPayloadError

def build_url(db: dict) -> str:
    """
    Build the SQLAlchemy URL of a `db` configuration section.

    Args:
        db (dict): Either a full `url`, or host/port/username/password/database/charset

    Returns:
        str: SQLAlchemy database URL
    """

    if db.get('url'):
        return db['url']

    return 'mysql+pymysql://%s:%s@%s:%s/%s?charset=%s' % (db['username'], quote_plus(str(db['password'])), db['host'], db.get('port', 3306), db['database'], db.get('charset', 'utf8mb4'))

class DelayedStore(object):
    """
    Time ordered persistent store of delayed jobs.
    """

    def __init__(self, logger: object, url: str, table: str = 'jd_delayed_jobs', engine = None) -> None:
        """
        Initialize the store.

        Args:
            logger (object): Application logger
            url (str): SQLAlchemy database URL
            table (str): Table name
            engine (Engine): Ready engine, overrides `url`

        Returns:
            None
        """

        self.logger = logger
        self.url = url
        self.engine = engine or create_engine(url, pool_pre_ping = True)

        ## table definition
        self.metadata = MetaData()
        self.jobs_t = Table(
            table, self.metadata,
            Column('seq', Integer, primary_key = True, autoincrement = True),
            Column('job_id', String(64), nullable = False, unique = True),
            Column('due_at', Float(25), nullable = False, index = True),
            Column('payload', Text, nullable = False),
            Column('created_at', Float(25), nullable = False),
        )

        ## skip rows another scheduler holds, where the database supports it
        self._skip_locked = self.engine.dialect.name in ('mysql', 'mariadb', 'postgresql')

    def init(self) -> None:
        """
        Create the table if it does not exist.

        Returns:
            None
        """

        self.metadata.create_all(self.engine, tables = [self.jobs_t])

    def dispose(self) -> None:
        self.engine.dispose()

    def schedule(self, envelope: JobEnvelope) -> str:
        """
        Persist a delayed job.

        Args:
            envelope (JobEnvelope): Job with due_at set

        Returns:
            str: Job id

        Raises:
            InvalidArgumentError: due_at is missing
        """

        if envelope.due_at is None:
            raise InvalidArgumentError('Job %s has no due time' % (envelope.id))

        with self.engine.begin() as conn:
            conn.execute(self.jobs_t.insert().values(
                job_id = envelope.id,
                due_at = envelope.due_at.timestamp(),
                payload = envelope.encode(),
                created_at = time.time(),
            ))

        self.logger.info({'status': 'job scheduled', 'id': envelope.id, 'task': envelope.task, 'due_at': envelope.due_at.isoformat()})
        return envelope.id

    @contextmanager
    def claim(self, now: float = None):
        """
        Claim the next due job.

        The job row is deleted in a transaction committed when the
        with-block exits cleanly; an exception raised inside the
        block rolls the delete back and leaves the job in the store.

        Args:
            now (float): Epoch seconds, defaults to the current time

        Yields:
            JobEnvelope: Next due job, or None when nothing is due
        """

        now = time.time() if now is None else now
        with self.engine.begin() as conn:
            envelope = None
            while True:
                query = (
                    select(self.jobs_t.c.seq, self.jobs_t.c.payload)
                    .where(self.jobs_t.c.due_at <= now)
                    .order_by(self.jobs_t.c.due_at, self.jobs_t.c.seq)
                    .limit(1)
                )
                if self._skip_locked:
                    query = query.with_for_update(skip_locked = True)

                row = conn.execute(query).first()
                if row is None:
                    break

                ## another claimer may have taken it between select and delete
                result = conn.execute(delete(self.jobs_t).where(self.jobs_t.c.seq == row.seq))
                if result.rowcount != 1:
                    continue

                try:
                    envelope = JobEnvelope.decode(row.payload)

                except MalformedPayloadError as e:
                    ## drop it, it would block the head of the store forever
                    self.logger.error({'status': 'dropped malformed delayed job', 'seq': row.seq, 'error': str(e)})
                    continue

                break

            yield envelope

    def get(self, job_id: str) -> JobEnvelope:
        """
        Fetch a delayed job by id.

        Args:
            job_id (str): Job id

        Returns:
            JobEnvelope: Job if found, otherwise None
        """

        with self.engine.connect() as conn:
            payload = conn.execute(select(self.jobs_t.c.payload).where(self.jobs_t.c.job_id == job_id)).scalar()

        return JobEnvelope.decode(payload) if payload else None

    def pending(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(self.jobs_t)).scalar()

    def remove(self, job_id: str) -> bool:
        """
        Cancel a delayed job.

        Args:
            job_id (str): Job id

        Returns:
            bool: True if the job was removed
        """

        with self.engine.begin() as conn:
            result = conn.execute(delete(self.jobs_t).where(self.jobs_t.c.job_id == job_id))

        removed = result.rowcount == 1
        self.logger.info({'status': 'job removed' if removed else 'job not found', 'id': job_id})
        return removed
