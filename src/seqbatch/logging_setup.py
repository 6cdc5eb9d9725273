# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Logging setup for the CLI and per-study error logs."""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(verbose: bool = False) -> None:
    """Install a single console handler on the root logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


class _ThreadFilter(logging.Filter):
    """Pass only records emitted by one thread or the workers it named.

    Studies processed side by side each run on their own thread, so this
    keeps one study's warnings out of another study's error log. Worker
    threads whose name starts with "<owner name>/" belong to the owner.
    """

    def __init__(self, thread: threading.Thread):
        super().__init__()
        self.thread_id = thread.ident
        self.worker_prefix = f"{thread.name}/"

    def filter(self, record: logging.LogRecord) -> bool:
        if record.thread == self.thread_id:
            return True
        return (record.threadName or "").startswith(self.worker_prefix)


@contextmanager
def study_error_log(path: Path, thread_scoped: bool = True) -> Iterator[Path]:
    """Collect WARNING and above into path while the block runs.

    Args:
        path: Error log file, appended to.
        thread_scoped: Only capture records from the calling thread and
            the worker threads it names after itself (the tier-1 pool).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    if thread_scoped:
        handler.addFilter(_ThreadFilter(threading.current_thread()))

    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield path
    finally:
        root.removeHandler(handler)
        handler.close()
