"""
Audit logging for controller actions.
Every decision the controller takes is recorded as one structured JSON event.
"""

import logging
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum


logger = logging.getLogger(__name__)


class AuditAction(Enum):
    """Types of auditable actions"""
    DEPLOYMENT_RECEIVED = "deployment_received"
    MONITORING_SKIPPED = "monitoring_skipped"
    HEALTH_CHECK_STARTED = "health_check_started"
    HEALTH_CHECK_PASSED = "health_check_passed"
    HEALTH_CHECK_FAILED = "health_check_failed"
    HEALTH_CHECK_UNKNOWN = "health_check_unknown"
    ROLLBACK_INITIATED = "rollback_initiated"
    ROLLBACK_COMMITTED = "rollback_committed"
    ROLLBACK_FAILED = "rollback_failed"
    SYNC_TRIGGERED = "sync_triggered"
    SYNC_DEFERRED = "sync_deferred"
    NOTIFICATION_SENT = "notification_sent"
    MANUAL_INTERVENTION_REQUIRED = "manual_intervention_required"
    STATE_SAVED = "state_saved"


class AuditLogger:
    """
    Structured audit logger for controller actions.
    Events are attached to the log record as a JSON string under ``audit_event``.
    """

    def __init__(self, service_name: str = "deploy-guardian", enabled: bool = True):
        self.service_name = service_name
        self.enabled = enabled
        self.logger = logging.getLogger(f"deploy_guardian.audit.{service_name}")
        self.logger.setLevel(logging.INFO)

    def log_event(
        self,
        action: AuditAction,
        deployment_id: Optional[str] = None,
        environment: Optional[str] = None,
        tag: Optional[str] = None,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Log an audit event with full context.

        Args:
            action: Type of action being audited
            deployment_id: Deployment identifier
            environment: Target environment
            tag: Image tag the action concerns
            success: Whether the action succeeded
            details: Additional context details
            error: Error message if action failed

        Returns:
            The emitted event, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        audit_event = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "service": self.service_name,
            "action": action.value,
            "success": success,
        }

        if deployment_id:
            audit_event["deployment_id"] = deployment_id
        if environment:
            audit_event["environment"] = environment
        if tag:
            audit_event["tag"] = tag
        if details:
            audit_event["details"] = details
        if error:
            audit_event["error"] = error

        self.logger.info(
            f"AUDIT: {action.value}",
            extra={"audit_event": json.dumps(audit_event, default=str)}
        )
        return audit_event

    def log_health_check_started(
        self,
        deployment_id: str,
        environment: str,
        workloads: list,
        timeout_seconds: float
    ):
        """Log when a health probe starts"""
        return self.log_event(
            action=AuditAction.HEALTH_CHECK_STARTED,
            deployment_id=deployment_id,
            environment=environment,
            details={
                "workloads": list(workloads),
                "timeout_seconds": timeout_seconds
            }
        )

    def log_health_verdict(
        self,
        deployment_id: str,
        environment: str,
        tag: str,
        verdict
    ):
        """Log the outcome of a health probe"""
        action = {
            "healthy": AuditAction.HEALTH_CHECK_PASSED,
            "unhealthy": AuditAction.HEALTH_CHECK_FAILED,
            "unknown": AuditAction.HEALTH_CHECK_UNKNOWN,
        }[verdict.status.value]
        return self.log_event(
            action=action,
            deployment_id=deployment_id,
            environment=environment,
            tag=tag,
            success=verdict.is_healthy,
            details=verdict.to_dict(),
            error=None if verdict.is_healthy else verdict.reason
        )

    def log_rollback_initiated(
        self,
        deployment_id: str,
        environment: str,
        current_tag: str,
        target_tag: str,
        reason: str
    ):
        """Log when a rollback is initiated"""
        return self.log_event(
            action=AuditAction.ROLLBACK_INITIATED,
            deployment_id=deployment_id,
            environment=environment,
            tag=current_tag,
            details={
                "target_tag": target_tag,
                "reason": reason,
                "message": f"Rolling back from {current_tag} to {target_tag}"
            }
        )

    def log_rollback_committed(
        self,
        deployment_id: str,
        environment: str,
        target_tag: str,
        commit_id: str
    ):
        """Log when the rollback commit has landed"""
        return self.log_event(
            action=AuditAction.ROLLBACK_COMMITTED,
            deployment_id=deployment_id,
            environment=environment,
            tag=target_tag,
            details={"commit": commit_id}
        )

    def log_rollback_failed(
        self,
        deployment_id: str,
        environment: str,
        tag: str,
        error: str
    ):
        """Log when a rollback could not be planned or persisted"""
        return self.log_event(
            action=AuditAction.ROLLBACK_FAILED,
            deployment_id=deployment_id,
            environment=environment,
            tag=tag,
            success=False,
            error=error
        )

    def log_sync(
        self,
        deployment_id: str,
        environment: str,
        application: str,
        synced: bool
    ):
        """Log the result of a GitOps sync request"""
        return self.log_event(
            action=AuditAction.SYNC_TRIGGERED if synced else AuditAction.SYNC_DEFERRED,
            deployment_id=deployment_id,
            environment=environment,
            details={"application": application}
        )

    def log_manual_intervention_required(
        self,
        deployment_id: str,
        environment: str,
        tag: str,
        reason: str
    ):
        """Log when operators have to step in"""
        return self.log_event(
            action=AuditAction.MANUAL_INTERVENTION_REQUIRED,
            deployment_id=deployment_id,
            environment=environment,
            tag=tag,
            success=False,
            details={
                "reason": reason,
                "message": "Automatic recovery not possible, manual intervention required"
            }
        )


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
