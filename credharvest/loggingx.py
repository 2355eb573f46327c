"""
Structured Logging Setup

Configures structured logging with proper formatting and output handling.
Log output goes to stderr: stdout is reserved for the credential key/value
lines.
"""

import sys
import logging
import structlog
from typing import Optional
from pathlib import Path


def setup_logging(level: str = "INFO", verbose: bool = False,
                  log_file: Optional[str] = None) -> None:
    """
    Setup structured logging for the credential harvester.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        verbose: Enable human-readable console output instead of JSON
        log_file: Optional file path for logging output
    """
    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
        force=True
    )

    # Quiet chatty transport libraries unless debugging
    if level.upper() != "DEBUG":
        for noisy in ("paramiko", "botocore", "boto3", "urllib3"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if verbose:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

        logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structured logger
    """
    return structlog.get_logger(name)


def log_run_start(run_name: str, service_count: int, deadline: Optional[float],
                  logger: Optional[structlog.BoundLogger] = None) -> None:
    """Log the start of a multi-service acquisition run."""
    if logger is None:
        logger = get_logger(__name__)

    logger.info("Acquisition run started",
                run_name=run_name,
                service_count=service_count,
                deadline=deadline)


def log_run_completion(run_name: str, duration: float, verified: int,
                       total: int, logger: Optional[structlog.BoundLogger] = None) -> None:
    """Log the end of a multi-service acquisition run."""
    if logger is None:
        logger = get_logger(__name__)

    logger.info("Acquisition run completed",
                run_name=run_name,
                duration=round(duration, 2),
                verified=verified,
                total=total)


def log_acquisition_completion(record, duration: float,
                               logger: Optional[structlog.BoundLogger] = None) -> None:
    """
    Log the outcome of one service acquisition.

    Args:
        record: CredentialRecord produced for the service
        duration: Acquisition duration in seconds
        logger: Optional logger instance
    """
    if logger is None:
        logger = get_logger(__name__)

    log_data = record.masked()
    log_data['duration'] = round(duration, 2)

    if record.succeeded:
        logger.info("Service acquisition completed", **log_data)
    else:
        logger.warning("Service acquisition failed", **log_data)
