"""Importing this package registers the payments.* tasks."""
from . import payments  # noqa: F401

__all__ = ["payments"]
