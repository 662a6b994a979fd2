import logging
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_LOG_FORMAT = LOG_FORMAT + ' - [%(filename)s:%(lineno)d]'

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Per-request chatter from the HTTP and Blob Storage clients
NOISY_LOGGERS = (
    'urllib3',
    'azure.core.pipeline.policies.http_logging_policy',
)


def resolve_log_level(value=None, default=logging.INFO) -> int:
    """
    Turn a level name ("debug", "WARNING") or number into a logging level

    Falls back to default for empty or unknown values.
    """
    if value is None or str(value).strip() == '':
        return default
    value = str(value).strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def resolve_log_file(log_dir=None) -> str:
    """Daily log file path under log_dir, AZDO_LOG_DIR or ./logs"""
    log_dir = log_dir or os.environ.get('AZDO_LOG_DIR') or os.path.join(os.getcwd(), 'logs')
    os.makedirs(log_dir, exist_ok=True)
    return os.path.join(log_dir, f"azdo_tree_{datetime.now().strftime('%Y%m%d')}.log")


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _file_handler(log_file: str, log_level: int) -> logging.Handler:
    handler = RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    return handler


def setup_logging(log_level=None, log_dir=None):
    """
    Configure the root logger for the work item tree service

    The console only shows INFO and above; the rotating daily file gets
    everything at log_level. Client libraries that log every HTTP round trip
    are held at WARNING.

    Args:
        log_level: Level for the root logger and log file, defaults to AZDO_LOG_LEVEL or INFO
        log_dir: Directory for log files, defaults to AZDO_LOG_DIR or ./logs

    Returns:
        The configured root logger
    """
    if log_level is None:
        log_level = resolve_log_level(os.environ.get('AZDO_LOG_LEVEL'))

    root = logging.getLogger()
    root.setLevel(log_level)

    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, RotatingFileHandler):
            handler.close()

    root.addHandler(_console_handler())
    root.addHandler(_file_handler(resolve_log_file(log_dir), log_level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
