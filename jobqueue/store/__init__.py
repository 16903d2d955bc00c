"""
Store module.
Contains the Redis connection handling, key layout, transition scripts and
the job repository.
"""

from jobqueue.store.connection import ClientFactory, ConnectionOptions, client_factory, close_client
from jobqueue.store.keys import Keyspace
from jobqueue.store.repository import JobRepository, now_ms

__all__ = [
    "client_factory",
    "close_client",
    "ClientFactory",
    "ConnectionOptions",
    "Keyspace",
    "JobRepository",
    "now_ms",
]
