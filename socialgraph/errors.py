"""
Domain errors shared by every component.

Validation errors are rejected synchronously and never retried.
StorageError wraps transient failures from the relational store
(lock wait timeouts, deadlocks, lost connections); callers may retry.
"""


class SocialGraphError(Exception):
    """Base class for all socialgraph errors."""


class InvalidArgumentError(SocialGraphError):
    pass


class NotFoundError(SocialGraphError):
    pass


class StorageError(SocialGraphError):
    pass
