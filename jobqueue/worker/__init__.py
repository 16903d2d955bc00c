"""
Worker module.
Contains the job execution loop and the handler registry.
"""

from jobqueue.worker.handlers import get_handler, list_handlers, register_handler
from jobqueue.worker.main import Worker

__all__ = ["Worker", "register_handler", "get_handler", "list_handlers"]
