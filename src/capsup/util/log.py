# src/capsup/util/log.py: Structured JSON logger.
# This module provides a centralized logging setup that outputs structured
# JSON logs through python-json-logger. A context variable carries the key of
# the supervised device into every record, and threads started through
# `start_thread` inherit it.

import contextvars
import logging
import threading
from logging.config import dictConfig

device_context = contextvars.ContextVar('device_context', default=None)


class DeviceContextFilter(logging.Filter):
    def filter(self, record):
        record.device = device_context.get()
        return True


def setup_logging(level: str = "INFO", json_format: bool = True):
    """Configure the root logger for the application."""
    level = level.upper()
    if json_format:
        formatter = {
            '()': 'pythonjsonlogger.json.JsonFormatter',
            'format': '%(asctime)s %(name)s %(levelname)s %(device)s %(message)s',
        }
    else:
        formatter = {
            'format': '%(asctime)s - %(name)s - %(levelname)s - [%(device)s] %(message)s',
        }
    dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'filters': {
            'device': {'()': DeviceContextFilter},
        },
        'formatters': {
            'default': formatter,
        },
        'handlers': {
            'stderr': {
                'class': 'logging.StreamHandler',
                'stream': 'ext://sys.stderr',
                'formatter': 'default',
                'filters': ['device'],
            },
        },
        'loggers': {
            'capsup': {
                'handlers': ['stderr'],
                'level': level,
                'propagate': False,
            },
        },
    })


def get_logger(name):
    return logging.getLogger(name)


def start_thread(target, *args, name=None) -> threading.Thread:
    """Start a daemon thread that runs in a copy of the caller's context."""
    ctx = contextvars.copy_context()
    thread = threading.Thread(target=ctx.run, args=(target, *args), name=name, daemon=True)
    thread.start()
    return thread
