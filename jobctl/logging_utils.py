import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional


LOGGER_NAME = 'jobctl'


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f'{LOGGER_NAME}.{component}')


def setup_logging(log_dir: Optional[str] = None, level: str = 'INFO'):
    logger = logging.getLogger(LOGGER_NAME)

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir) / 'worker.log'
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=10*1024*1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def setup_execution_logging(log_dir: Optional[str], execution_id: str) -> Optional[logging.FileHandler]:
    if not log_dir:
        return None

    execution_log_path = Path(log_dir) / 'jobs' / f'{execution_id}.log'
    execution_log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(execution_log_path)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    return handler
