import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional
from contextvars import ContextVar

# Context variable for the deployment currently being processed
deployment_id_var: ContextVar[Optional[str]] = ContextVar('deployment_id', default=None)

_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName',
    'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName'
])


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    One JSON object per line so CI logs and aggregators can parse them.
    """

    def __init__(self, service_name: str = 'deploy-guardian'):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'service': self.service_name,
        }

        deployment_id = deployment_id_var.get()
        if deployment_id:
            log_data['deployment_id'] = deployment_id

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        # Fields passed through extra=
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = 'INFO',
    use_json: bool = True,
    service_name: str = 'deploy-guardian'
) -> logging.Logger:
    """
    Configure logging for the deploy_guardian package.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Whether to use JSON formatting
        service_name: Service name stamped on every JSON record

    Returns:
        The configured package logger
    """
    logger = logging.getLogger('deploy_guardian')
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if use_json:
        formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def set_deployment_id(deployment_id: Optional[str]):
    """Bind a deployment id to log records emitted from the current context"""
    return deployment_id_var.set(deployment_id)


def clear_deployment_id():
    deployment_id_var.set(None)
