"""Convenience entry point for running a payments Celery worker.

Equivalent to ``celery -A infrastructure.tasks worker -Q high,default,low``;
pass ``--beat`` to embed the retry sweep scheduler in the same process.
"""
from __future__ import annotations

import sys

from .config.celery import celery_app


def main(argv: list[str] | None = None) -> None:
    extra = list(sys.argv[1:] if argv is None else argv)
    celery_app.worker_main(
        argv=["worker", "--hostname=payments@%h", "--queues=high,default,low", "--loglevel=INFO", *extra]
    )


if __name__ == "__main__":
    main()
