"""
Logging Infrastructure

Structured JSON logging with optional CloudWatch shipping and log rotation.
Liquidation outcomes also go to a dedicated audit file.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from datetime import datetime
import structlog
from structlog.types import EventDict, Processor
import boto3
from botocore.exceptions import ClientError


# ============================================================================
# Custom Processors
# ============================================================================

def add_module_name(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add module name to log record"""
    event_dict["module"] = getattr(logger, "name", None)
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 timestamp to log record"""
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    return event_dict


def add_log_level(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = method_name.upper()
    return event_dict


def add_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    if "context" not in event_dict:
        event_dict["context"] = {}
    return event_dict


# ============================================================================
# CloudWatch Handler
# ============================================================================

class CloudWatchHandler(logging.Handler):
    """
    Ships log records to AWS CloudWatch Logs.

    Records are batched and sent once `batch_size` is reached or on close.
    """

    def __init__(
        self,
        log_group: str,
        log_stream: str,
        region: str = "us-east-1",
        batch_size: int = 100,
    ):
        super().__init__()
        self.log_group = log_group
        self.log_stream = log_stream
        self.batch_size = batch_size
        self.sequence_token: Optional[str] = None
        self.batch: list = []

        try:
            self.client = boto3.client('logs', region_name=region)
            self._create_if_missing(self.client.create_log_group, logGroupName=log_group)
            self._create_if_missing(
                self.client.create_log_stream, logGroupName=log_group, logStreamName=log_stream
            )
            self.enabled = True
        except Exception as e:
            # CloudWatch is optional; keep local handlers working
            print(f"CloudWatch initialization failed: {e}", file=sys.stderr)
            self.enabled = False

    @staticmethod
    def _create_if_missing(create, **kwargs):
        try:
            create(**kwargs)
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceAlreadyExistsException':
                raise

    def emit(self, record: logging.LogRecord):
        if not self.enabled:
            return
        try:
            self.batch.append({
                'timestamp': int(record.created * 1000),
                'message': self.format(record)
            })
            if len(self.batch) >= self.batch_size:
                self.flush()
        except Exception:
            self.handleError(record)

    def flush(self):
        """Send batched records to CloudWatch"""
        if not self.enabled or not self.batch:
            return

        batch, self.batch = sorted(self.batch, key=lambda x: x['timestamp']), []
        kwargs = {
            'logGroupName': self.log_group,
            'logStreamName': self.log_stream,
            'logEvents': batch
        }
        if self.sequence_token:
            kwargs['sequenceToken'] = self.sequence_token

        try:
            response = self.client.put_log_events(**kwargs)
            self.sequence_token = response.get('nextSequenceToken')
        except Exception as e:
            print(f"CloudWatch flush error: {e}", file=sys.stderr)

    def close(self):
        self.flush()
        super().close()


# ============================================================================
# Logging Configuration
# ============================================================================

class LoggingConfig:
    """
    Centralized logging configuration.

    Features:
    - Structured JSON logging through structlog
    - Console, rotating file and liquidation audit file handlers
    - Optional CloudWatch shipping
    """

    def __init__(
        self,
        log_dir: Path = Path("logs"),
        log_level: str = "INFO",
        enable_cloudwatch: bool = False,
        cloudwatch_region: str = "us-east-1",
        cloudwatch_log_group: str = "Sentinel",
        cloudwatch_log_stream: Optional[str] = None
    ):
        self.log_dir = Path(log_dir)
        self.log_level = log_level.upper()
        self.enable_cloudwatch = enable_cloudwatch
        self.cloudwatch_region = cloudwatch_region
        self.cloudwatch_log_group = cloudwatch_log_group
        self.cloudwatch_log_stream = cloudwatch_log_stream or f"liquidator-{datetime.utcnow().strftime('%Y%m%d-%H%M%S')}"

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._configure_structlog()
        self._configure_stdlib_logging()

    def _configure_structlog(self):
        processors: list[Processor] = [
            structlog.contextvars.merge_contextvars,
            add_module_name,
            add_timestamp,
            add_log_level,
            add_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ]

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(
                logging.getLevelName(self.log_level)
            ),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

    def _configure_stdlib_logging(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)
        root_logger.handlers.clear()

        formatter = logging.Formatter('%(message)s')

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / "sentinel.log",
            maxBytes=100 * 1024 * 1024,  # 100 MB
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        # Audit trail of liquidation outcomes
        liquidation_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / "liquidations.log",
            maxBytes=100 * 1024 * 1024,
            backupCount=50,
            encoding='utf-8'
        )
        liquidation_handler.setLevel(logging.INFO)
        liquidation_handler.setFormatter(formatter)
        liquidation_handler.addFilter(lambda record: 'liquidation' in record.name.lower())
        root_logger.addHandler(liquidation_handler)

        if self.enable_cloudwatch:
            cloudwatch_handler = CloudWatchHandler(
                log_group=self.cloudwatch_log_group,
                log_stream=self.cloudwatch_log_stream,
                region=self.cloudwatch_region,
            )
            cloudwatch_handler.setLevel(logging.INFO)
            cloudwatch_handler.setFormatter(formatter)
            root_logger.addHandler(cloudwatch_handler)

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        return structlog.get_logger(name)


# ============================================================================
# Global Logger Instance
# ============================================================================

_logging_config: Optional[LoggingConfig] = None


def init_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    enable_cloudwatch: bool = False,
    cloudwatch_region: str = "us-east-1",
    cloudwatch_log_group: str = "Sentinel",
    cloudwatch_log_stream: Optional[str] = None
) -> LoggingConfig:
    """
    Initialize global logging configuration.

    Args:
        log_dir: Directory for log files
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_cloudwatch: Enable CloudWatch shipping
        cloudwatch_region: AWS region for CloudWatch
        cloudwatch_log_group: CloudWatch log group name
        cloudwatch_log_stream: CloudWatch log stream name (auto-generated if None)
    """
    global _logging_config
    _logging_config = LoggingConfig(
        log_dir=log_dir,
        log_level=log_level,
        enable_cloudwatch=enable_cloudwatch,
        cloudwatch_region=cloudwatch_region,
        cloudwatch_log_group=cloudwatch_log_group,
        cloudwatch_log_stream=cloudwatch_log_stream
    )
    return _logging_config


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Before init_logging() runs this returns structlog's default logger, so
    library code and tests never touch the root handlers.
    """
    if _logging_config is None:
        return structlog.get_logger(name)
    return _logging_config.get_logger(name)


# ============================================================================
# Convenience Functions
# ============================================================================

def log_liquidation_outcome(
    logger: structlog.stdlib.BoundLogger,
    report: Dict[str, Any]
):
    """
    Write a liquidation attempt to the audit trail.

    Args:
        logger: Logger instance (its name should contain 'liquidation')
        report: LiquidationReport as a dictionary
    """
    method = logger.warning if report.get("outcome") == "failed" else logger.info
    method(
        "liquidation_outcome",
        context={
            "event_type": "liquidation_outcome",
            "report": report
        }
    )
