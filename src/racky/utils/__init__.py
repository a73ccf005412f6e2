import os
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from time import time

from loguru import logger

root_dir = Path(__file__).resolve().parents[3]

data_dir_path = Path(os.getenv("RACKY_DATA_DIR", root_dir / "data"))


def get_version() -> str:
    try:
        with open(root_dir / "pyproject.toml") as file:
            pyproject_toml = file.read()
    except FileNotFoundError:
        return "0.0.0"

    match = re.search(r'^version = "(.+)"', pyproject_toml, re.MULTILINE)
    if match:
        version = match.group(1)
    else:
        raise ValueError("Could not find version in pyproject.toml")
    return version


def utcnow() -> datetime:
    """Naive UTC timestamp used for every persisted datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(start: datetime | None, end: datetime | None) -> float:
    if start is None or end is None:
        return 0.0
    return max(0.0, (end - start).total_seconds() * 1000)


@contextmanager
def benchmark(
    *,
    log: Callable[[float], None] | None,
    decimal_places: int = 3,
) -> Iterator[None]:
    """Context manager for benchmarking code execution time."""

    start_time = time()

    try:
        yield
    finally:
        elapsed = time() - start_time

        if log:
            log(round(elapsed, decimal_places))
        else:
            logger.debug(f"Execution time: {elapsed:.{decimal_places}f} seconds")
