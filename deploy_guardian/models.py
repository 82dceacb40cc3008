"""
Domain types for the deployment health monitor and rollback controller
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple


ENVIRONMENTS = ('dev', 'staging', 'prod')


class HealthStatus(Enum):
    """Outcome of a health probe"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class RollbackReason(Enum):
    """Why the controller entered the rollback path"""
    HEALTH_CHECK_FAILED = "health_check_failed"
    HEALTH_UNVERIFIABLE = "health_unverifiable"

    def describe(self) -> str:
        if self is RollbackReason.HEALTH_UNVERIFIABLE:
            return "health could not be verified"
        return "health check failed"


class NotificationKind(Enum):
    """Types of outbound notifications"""
    DEPLOY_SUCCESS = "deploy_success"
    DEPLOY_FAILURE = "deploy_failure"
    ROLLBACK_TRIGGERED = "rollback_triggered"


class SyncResult(Enum):
    """Result of an active GitOps reconciliation request"""
    SYNCED = "synced"
    DEFERRED = "deferred"


class ControllerState(Enum):
    """Controller state machine"""
    IDLE = "idle"
    WAITING = "waiting"
    PROBING = "probing"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    NOTIFYING = "notifying"
    DONE = "done"


class RunOutcome(Enum):
    """Terminal outcome of one controller run"""
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentEvent:
    """One deployment attempt handed over by the release pipeline"""
    environment: str
    tag: str
    commit: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.environment not in ENVIRONMENTS:
            raise ValueError(
                f"Unknown environment '{self.environment}', "
                f"expected one of {list(ENVIRONMENTS)}"
            )
        if not self.tag:
            raise ValueError("tag must not be empty")

    @property
    def deployment_id(self) -> str:
        return f"{self.environment}-{self.tag}-{self.commit[:7]}"


@dataclass(frozen=True)
class VersionEntry:
    """A single manifest revision: the tag it declared and the commit that set it"""
    tag: str
    commit: str
    timestamp: float


# Oldest first, ordered by commit history
VersionRecord = List[VersionEntry]


@dataclass(frozen=True)
class WorkloadHealth:
    """Replica counts observed for one workload"""
    name: str
    desired: int
    ready: int

    @property
    def included(self) -> bool:
        # Scaled to zero on purpose; not part of the verdict
        return self.desired > 0

    @property
    def healthy(self) -> bool:
        return self.desired > 0 and self.ready == self.desired


@dataclass(frozen=True)
class HealthVerdict:
    """Overall probe result across a set of workloads"""
    status: HealthStatus
    reason: str = ""
    workloads: Tuple[WorkloadHealth, ...] = ()

    @classmethod
    def unknown(cls, reason: str) -> 'HealthVerdict':
        return cls(status=HealthStatus.UNKNOWN, reason=reason)

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'reason': self.reason,
            'workloads': [asdict(w) for w in self.workloads],
        }


@dataclass(frozen=True)
class RollbackPlan:
    """Target selected for one rollback; lives only inside a controller run"""
    environment: str
    current_tag: str
    target_tag: str
    target_commit: str
    reason: RollbackReason


@dataclass(frozen=True)
class ChangelogEntry:
    short_commit: str
    subject: str

    def render(self) -> str:
        return f"{self.short_commit} {self.subject}"


@dataclass
class NotificationEvent:
    """Outbound payload for the notification channels"""
    kind: NotificationKind
    environment: str
    tag: str
    commit: str
    title: str
    status: str
    reason: Optional[str] = None
    changelog: List[ChangelogEntry] = field(default_factory=list)
    channels: List[str] = field(default_factory=list)
    link: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'environment': self.environment,
            'tag': self.tag,
            'commit': self.commit,
            'title': self.title,
            'status': self.status,
            'reason': self.reason,
            'changelog': [entry.render() for entry in self.changelog],
            'channels': list(self.channels),
            'link': self.link,
        }


@dataclass
class ControllerResult:
    """Everything one controller run observed and did"""
    deployment_id: str
    environment: str
    tag: str
    commit: str
    final_state: ControllerState = ControllerState.IDLE
    outcome: Optional[RunOutcome] = None
    verdict: Optional[HealthVerdict] = None
    plan: Optional[RollbackPlan] = None
    rollback_commit: Optional[str] = None
    sync_result: Optional[SyncResult] = None
    notification: Optional[NotificationEvent] = None
    error: Optional[str] = None
    states: List[ControllerState] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def enter(self, state: ControllerState) -> None:
        self.final_state = state
        self.states.append(state)

    def to_dict(self) -> Dict:
        """Serialize with enums flattened to their values"""
        plan = None
        if self.plan:
            plan = asdict(self.plan)
            plan['reason'] = self.plan.reason.value
        return {
            'deployment_id': self.deployment_id,
            'environment': self.environment,
            'tag': self.tag,
            'commit': self.commit,
            'final_state': self.final_state.value,
            'outcome': self.outcome.value if self.outcome else None,
            'verdict': self.verdict.to_dict() if self.verdict else None,
            'plan': plan,
            'rollback_commit': self.rollback_commit,
            'sync_result': self.sync_result.value if self.sync_result else None,
            'notification': self.notification.to_dict() if self.notification else None,
            'error': self.error,
            'states': [s.value for s in self.states],
            'timestamp': self.timestamp,
        }
