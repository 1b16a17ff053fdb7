"""
Logging setup and structured event logging
"""

import json
import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler

from printdispatch.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(log_dir=None, filename="printdispatch.log", level=logging.INFO):
    """Attach console + rotating file handlers to the package logger"""
    root = logging.getLogger("printdispatch")
    root.setLevel(level)
    if root.handlers:
        return root

    log_dir = log_dir or Config.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, filename),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5
    )
    console_handler = logging.StreamHandler()

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    root.addHandler(file_handler)
    root.addHandler(console_handler)
    return root


class StructuredLogger:
    """Structured logging for job lifecycle events"""

    def __init__(self, name="printdispatch.events"):
        self.logger = logging.getLogger(name)

    def log_event(self, event_type, data, level="info"):
        """Log structured event"""
        log_entry = {
            'timestamp': datetime.now().isoformat(),
            'event': event_type,
            'data': data
        }

        log_func = getattr(self.logger, level)
        log_func(json.dumps(log_entry, default=str))

    def log_transition(self, job_id, old_status, new_status, **extra):
        self.log_event('job_transition', {
            'job_id': job_id,
            'from': old_status,
            'to': new_status,
            **extra
        })

    def log_error(self, error_type, details):
        self.log_event('error', {
            'error_type': error_type,
            'details': str(details)
        }, level='error')


events = StructuredLogger()
