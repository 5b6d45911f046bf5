"""
Worker logging: one configured logger tree plus an operation decorator.

Every component logs through a child of ``scraper_worker``
(``scraper_worker.pipeline``, ``scraper_worker.storage``, ...). The CLI calls
setup_logging() once at process start; the handlers it attaches to the root
worker logger receive the records of every component.

Usage:
    from scraper_worker.logger import setup_logging, log_function

    setup_logging("scraper_worker", "logs/worker.log", verbose=True)

    @log_function(logger_name="scraper_worker.pipeline", log_args=True)
    def ingest(params, job_id=None):
        ...
"""

import functools
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional


ROOT_LOGGER_NAME = "scraper_worker"

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"

# Ledgers, stores and payload lists have long reprs
MAX_ARG_REPR = 200


def _file_handler(log_file: str, level: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def setup_logging(
    logger_name: str = ROOT_LOGGER_NAME,
    log_file: str = "logs/worker.log",
    verbose: bool = False,
    level: int = logging.INFO,
) -> logging.Logger:
    """
    Attach a file handler (and a DEBUG console handler in verbose mode).

    A logger that already has handlers is returned unchanged, so repeated
    calls in one process do not duplicate output.

    Args:
        logger_name: Logger to configure (default: "scraper_worker")
        log_file: Log file path; its directory is created if missing
        verbose: Add a console handler and lower the logger to DEBUG
        level: Level of the file handler

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG if verbose else level)
    logger.addHandler(_file_handler(log_file, level))
    if verbose:
        logger.addHandler(_console_handler())
    return logger


def _short_repr(value: Any) -> str:
    text = repr(value)
    if len(text) > MAX_ARG_REPR:
        return text[: MAX_ARG_REPR - 3] + "..."
    return text


def _describe_call(func_name: str, args: tuple, kwargs: dict) -> str:
    parts = [_short_repr(a) for a in args]
    parts += [f"{k}={_short_repr(v)}" for k, v in kwargs.items()]
    return f"{func_name}({', '.join(parts)})"


def log_function(
    logger_name: Optional[str] = None,
    level: int = logging.INFO,
    log_args: bool = False,
    log_result: bool = False,
    log_execution_time: bool = True,
) -> Callable:
    """
    Log entry, completion, elapsed time and exceptions of a top-level operation.

    Exceptions are logged with their traceback and re-raised unchanged.

    Args:
        logger_name: Logger to use (default: the decorated function's module)
        level: Level of the entry/completion records
        log_args: Include (truncated) argument reprs in the entry record
        log_result: Include the return value in the completion record
        log_execution_time: Include the elapsed time in the completion record
    """

    def decorator(func: Callable) -> Callable:
        name = logger_name or func.__module__

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            logger = logging.getLogger(name)
            if log_args and (args or kwargs):
                logger.log(level, f"Calling {_describe_call(func.__name__, args, kwargs)}")
            else:
                logger.log(level, f"Calling {func.__name__}")

            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{func.__name__} raised {type(e).__name__} after "
                    f"{time.perf_counter() - started:.2f}s: {e}",
                    exc_info=True,
                )
                raise

            message = f"Completed {func.__name__}"
            if log_execution_time:
                message += f" in {time.perf_counter() - started:.2f}s"
            if log_result:
                message += f" -> {_short_repr(result)}"
            logger.log(level, message)
            return result

        return wrapper

    return decorator
