"""Console output shared by worker threads."""
from __future__ import annotations

import os
import sys
import threading

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None:
    GREEN = RED = YELLOW = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"

_lock = threading.Lock()


def say(message: str, dataset: str | None = None) -> None:
    line = f"{dataset}: {message}" if dataset else message
    with _lock:
        print(line, flush=True)


def warn(message: str, dataset: str | None = None) -> None:
    line = f"{dataset}: {message}" if dataset else message
    with _lock:
        print(f"{YELLOW}WARNING: {line}{RESET}", file=sys.stderr, flush=True)


def error(message: str, dataset: str | None = None) -> None:
    line = f"{dataset}: {message}" if dataset else message
    with _lock:
        print(f"{RED}ERROR: {line}{RESET}", file=sys.stderr, flush=True)
