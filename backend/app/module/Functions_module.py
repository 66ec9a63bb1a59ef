"""
Project-local Functions module (logging helper)
Provides:
- setup_logger(): config-driven loguru setup that honours `settings.LOG_TO_FILE`.

Used by the HTTP app and by the queue worker process, so the script name is
resolved from whichever entry point started the interpreter.
"""

import os
import sys
import socket
import datetime
from loguru import logger as loguru_logger
from typing import Any

from backend.app.config import settings as app_settings


def _script_name() -> str:
    argv0 = os.path.basename(sys.argv[0]) if sys.argv else ""
    if argv0 in ("hypercorn", "uvicorn", "quart"):
        return "app.py"
    if argv0 in ("rq", "testgen-worker"):
        return "worker.py"
    file_path = getattr(sys.modules.get("__main__", None), "__file__", None)
    if file_path:
        name = os.path.basename(file_path)
        if name == "__main__.py" and argv0.endswith('.py'):
            return argv0
        return name
    return argv0 or "unknown"


def setup_logger(log_dir: str | None = None) -> Any:
    """Setup and return a configured loguru Logger.

    Behavior:
    - Uses `settings.LOG_TO_FILE` to decide whether to add a dated file sink.
    - Always installs a stderr sink so logs appear in the terminal.

    Returns a loguru Logger bound with `server_name` and `script_name`.
    """
    try:
        server = socket.gethostname()
    except OSError:
        server = "localhost"

    script_name = _script_name()

    if log_dir is None:
        log_dir = os.getenv('LOG_PATH') or os.path.join(os.path.dirname(__file__), '..', '..', 'logs')
    log_dir = os.path.abspath(log_dir)

    loguru_logger.remove()

    logger_format = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | <cyan>{extra[server_name]}</cyan> | <cyan>{extra[script_name]}</cyan> | <level>{message}</level>"

    if app_settings.LOG_TO_FILE:
        try:
            os.makedirs(log_dir, exist_ok=True)
            date_str = datetime.datetime.now().strftime('%d-%m-%Y')
            log_path = os.path.join(log_dir, f"logger_{date_str}.log")
            loguru_logger.add(log_path, level="INFO", format=logger_format, encoding="utf-8", enqueue=True, backtrace=False, diagnose=False)
        except OSError as e:
            print(f"Warning: Could not create log file handler: {e}", file=sys.stderr)

    loguru_logger.add(sys.stderr, level="INFO", format=logger_format, colorize=True)

    return loguru_logger.bind(server_name=server, script_name=script_name)
