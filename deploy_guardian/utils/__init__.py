from .audit import (
    AuditLogger,
    AuditAction,
    get_audit_logger
)
from .logger import (
    JSONFormatter,
    setup_logging,
    set_deployment_id,
    clear_deployment_id
)

__all__ = [
    'AuditLogger',
    'AuditAction',
    'get_audit_logger',
    'JSONFormatter',
    'setup_logging',
    'set_deployment_id',
    'clear_deployment_id',
]
