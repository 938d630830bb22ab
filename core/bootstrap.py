"""
core/bootstrap.py -- Process-level startup routines: logging and fatal-error hooks.

Both functions are idempotent and must be invoked explicitly by a process
entry point (asgi.py, main.py, or the API lifespan). Nothing here runs as a
side effect of importing a module.

  configure_logging()    -- root logging format and level (stdlib logging).
  install_error_hooks()  -- routes uncaught exceptions in the main thread,
                            worker threads, and the asyncio loop to the
                            "estategate.fatal" logger.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading

_LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logging_configured = False
_hooks_installed = False
_lock = threading.Lock()

fatal_logger = logging.getLogger("estategate.fatal")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once. Later calls only adjust the level."""
    global _logging_configured
    with _lock:
        if _logging_configured:
            logging.getLogger().setLevel(level.upper())
            return
        logging.basicConfig(level=level.upper(), format=_LOG_FORMAT, datefmt=_DATE_FORMAT)
        _logging_configured = True


def _excepthook(exc_type, exc_value, exc_tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    fatal_logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))


def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
    if args.exc_type is SystemExit:
        return
    thread_name = args.thread.name if args.thread else "unknown"
    fatal_logger.critical(
        "Uncaught exception in thread %s",
        thread_name,
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exc is not None:
        fatal_logger.critical(message, exc_info=exc)
    else:
        fatal_logger.critical(message)


def install_error_hooks(loop: asyncio.AbstractEventLoop | None = None) -> bool:
    """Install process-wide uncaught-exception hooks exactly once.

    Returns True when the hooks were installed by this call, False when a
    previous call already installed them. An event loop passed in receives
    the loop exception handler even on repeat calls, so the lifespan can
    attach it to the running loop after asgi.py installed the sys hooks.
    """
    global _hooks_installed
    if loop is not None:
        loop.set_exception_handler(_loop_exception_handler)
    with _lock:
        if _hooks_installed:
            return False
        sys.excepthook = _excepthook
        threading.excepthook = _thread_excepthook
        _hooks_installed = True
    return True
