"""Logging setup shared by every orchestrator component."""
import logging
import os
from pathlib import Path
from typing import Optional

LOGGER_NAME = 'ssh_orchestrator'
DEFAULT_LOG_DIR = '/tmp/mcp_ssh_orchestrator_logs'
LOG_FORMAT = '%(asctime)s - [%(threadName)s] - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: Optional[str] = None, level: int = logging.DEBUG) -> logging.Logger:
    """Return the project logger, attaching the file handler on first use.

    Only a file handler is installed: stdout carries the MCP protocol and must
    not receive log records.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    log_path = Path(log_dir or os.getenv('MCP_SSH_LOG_DIR') or DEFAULT_LOG_DIR)
    log_file = log_path / 'mcp_ssh_orchestrator.log'

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_file):
            return logger

    log_path.mkdir(exist_ok=True, parents=True)
    file_handler = logging.FileHandler(str(log_file))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    logger.info(f"Logging to {log_file}")
    return logger


def get_logger(child: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    return logger.getChild(child) if child else logger
