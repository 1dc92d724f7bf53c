"""Jobplatform: durable background jobs on a relational store."""

from .contracts import Handler, JobContext, JobError
from .history import JobRepository
from .models import EnqueueOptions, Job, Schedule, encode_payload
from .queue import DurableQueue
from .registry import Registry
from .scheduler import Scheduler
from .sql import Database
from .worker import Worker

__version__ = "0.1.0"

__all__ = [
    "Database",
    "DurableQueue",
    "EnqueueOptions",
    "Handler",
    "Job",
    "JobContext",
    "JobError",
    "JobRepository",
    "Registry",
    "Schedule",
    "Scheduler",
    "Worker",
    "encode_payload",
    "__version__",
]
