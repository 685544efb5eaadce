"""
# utils/logging_utils.py

Module Contract
- Purpose: Named loggers and timing decorators shared by every pipeline stage.
- Inputs:
  - configure_logging(level, file_path, ...) once from the entrypoint
  - get_logger(name), log_and_time(label), log_duration(tag), log_async_operation
- Outputs:
  - Logger instances; wrapped callables (sync, coroutine, async generator) that log START/END/FAILED with durations.
- Side effects:
  - configure_logging() replaces root handlers and truncates the session log file.
"""

from typing import Callable, Optional, Union
import logging
import time
import inspect
import functools

DEFAULT_LOG_FILE = "analysis_debug.log"
_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        return value if isinstance(value, int) else logging.INFO
    return level


def configure_logging(
    level: Union[int, str] = logging.INFO,
    file_path: Optional[str] = DEFAULT_LOG_FILE,
    file_level: Union[int, str] = logging.DEBUG,
    console_level: Optional[Union[int, str]] = None,
) -> None:
    """Configure the root logger once, without duplicate handlers.

    Call before the orchestrator is built. A falsy ``file_path`` keeps
    logging console-only.
    """
    level = _coerce_level(level)
    file_level = _coerce_level(file_level)

    root = logging.getLogger()
    if root.hasHandlers():
        root.handlers.clear()
    root.setLevel(min(level, file_level) if file_path else level)

    fmt = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    ch = logging.StreamHandler()
    ch.setLevel(_coerce_level(console_level) if console_level is not None else level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    if file_path:
        try:
            # Fresh log per session, then append for the lifetime of the process
            open(file_path, "w", encoding="utf-8").close()
            fh = logging.FileHandler(file_path, mode="a", encoding="utf-8")
            fh.setLevel(file_level)
            fh.setFormatter(fmt)
            root.addHandler(fh)
        except OSError as e:
            root.warning(f"[LOGGING] File handler unavailable ({file_path}): {e}")


def get_logger(name: str = "analysis_app") -> logging.Logger:
    """Return a module-specific logger."""
    return logging.getLogger(name)


# --- Lightweight decorators ---

def log_and_time(label: str = "Function") -> Callable:
    """Decorator to log start/end and duration at DEBUG level.

    Works for plain functions, coroutines and async generators. Exceptions
    are logged with the elapsed time and re-raised unchanged.
    """
    def decorator(func):
        log = get_logger(func.__module__)

        if inspect.isasyncgenfunction(func):
            @functools.wraps(func)
            async def async_gen_wrapper(*args, **kwargs):
                start = time.time()
                log.debug(f"[{label}] START")
                try:
                    async for item in func(*args, **kwargs):
                        yield item
                except BaseException as e:
                    log.debug(f"[{label}] FAILED after {time.time() - start:.2f}s: {type(e).__name__}")
                    raise
                log.debug(f"[{label}] END - Duration: {time.time() - start:.2f}s")
            return async_gen_wrapper

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_func_wrapper(*args, **kwargs):
                start = time.time()
                log.debug(f"[{label}] START")
                try:
                    result = await func(*args, **kwargs)
                except BaseException as e:
                    log.debug(f"[{label}] FAILED after {time.time() - start:.2f}s: {type(e).__name__}")
                    raise
                log.debug(f"[{label}] END - Duration: {time.time() - start:.2f}s")
                return result
            return async_func_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.time()
            log.debug(f"[{label}] START")
            result = func(*args, **kwargs)
            log.debug(f"[{label}] END - Duration: {time.time() - start:.2f}s")
            return result
        return sync_wrapper

    return decorator


def log_duration(tag: str) -> Callable:
    """Decorator to log only the duration (DEBUG level)."""
    def decorator(func):
        log = get_logger(func.__module__)

        if inspect.isasyncgenfunction(func):
            return func

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start = time.time()
                try:
                    return await func(*args, **kwargs)
                finally:
                    log.debug(f"[TIMING] {tag} took {time.time() - start:.2f}s")
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                log.debug(f"[TIMING] {tag} took {time.time() - start:.2f}s")
        return sync_wrapper

    return decorator


def log_async_operation(func):
    """Decorator to log async operation start/complete/errors."""
    log = get_logger(func.__module__)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        log.debug(f"[ASYNC START] {func.__name__}")
        try:
            result = await func(*args, **kwargs)
            log.debug(f"[ASYNC COMPLETE] {func.__name__}")
            return result
        except Exception as e:
            log.error(f"[ASYNC ERROR] {func.__name__}: {type(e).__name__}: {e}")
            raise

    return wrapper
