"""
Centralized logging configuration for gitops-deployer.

Console output plus rotating log files, with dedicated streams for
deployment outcomes and pipeline progress.
"""
# mypy: ignore-errors

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

DEPLOYMENT_LOGGER = "gitops_deployer.deployments"
PIPELINE_LOGGER = "gitops_deployer.pipelines"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("service", "image", "commit_sha", "pipeline_id", "duration_ms")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        if self.use_colors and record.levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    log_dir: Optional[str] = None,
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """
    Configure logging for gitops-deployer.

    Args:
        log_dir: Directory for log files; console only when None
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

        main_handler = logging.handlers.RotatingFileHandler(
            log_path / "deployer.log", maxBytes=max_bytes, backupCount=backup_count
        )
        main_handler.setLevel(getattr(logging, file_level))
        main_handler.setFormatter(file_formatter)
        root_logger.addHandler(main_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / "error.log", maxBytes=max_bytes, backupCount=backup_count
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        root_logger.addHandler(error_handler)

        # Deployment audit trail
        deployment_handler = logging.handlers.RotatingFileHandler(
            log_path / "deployments.log", maxBytes=max_bytes, backupCount=backup_count
        )
        deployment_handler.setFormatter(file_formatter)
        deployment_logger = logging.getLogger(DEPLOYMENT_LOGGER)
        deployment_logger.addHandler(deployment_handler)
        deployment_logger.setLevel(logging.INFO)

        pipeline_handler = logging.handlers.RotatingFileHandler(
            log_path / "pipelines.log", maxBytes=max_bytes, backupCount=backup_count
        )
        pipeline_handler.setFormatter(file_formatter)
        pipeline_logger = logging.getLogger(PIPELINE_LOGGER)
        pipeline_logger.addHandler(pipeline_handler)
        pipeline_logger.setLevel(logging.INFO)

    # Set third-party loggers to WARNING to reduce noise
    for noisy in ("httpx", "httpcore", "botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir or '-'}, JSON: {use_json}"
    )


def log_deployment_operation(
    operation: str,
    service: str,
    success: bool,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log a deployment step to the deployment audit stream.

    Args:
        operation: Step name (pull, update, health, manifest, ...)
        service: Service name
        success: Whether the step succeeded
        details: Additional step details
    """
    logger = logging.getLogger(DEPLOYMENT_LOGGER)

    message = f"Deployment {operation} for {service}: {'SUCCESS' if success else 'FAILED'}"
    if details:
        message += f" - {json.dumps(details, default=str)}"

    if success:
        logger.info(message, extra={"service": service})
    else:
        logger.error(message, extra={"service": service})


def log_pipeline_event(
    project_id: str,
    commit_sha: str,
    status: str,
    pipeline_id: Optional[int] = None,
) -> None:
    """Log a pipeline status change to the pipeline stream."""
    logger = logging.getLogger(PIPELINE_LOGGER)
    logger.info(
        f"Pipeline {pipeline_id or '-'} for {project_id}@{commit_sha[:8]}: {status}",
        extra={"commit_sha": commit_sha, "pipeline_id": pipeline_id},
    )
