"""Scheduling, bookkeeping and restore orchestration for database backup routines."""

__version__ = "0.1.0"