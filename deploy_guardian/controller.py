"""
Deployment health monitor and rollback controller.

One controller run handles exactly one DeploymentEvent:

    IDLE -> WAITING -> PROBING -> SUCCEEDED | ROLLING_BACK -> NOTIFYING -> DONE

Environments outside the monitored allow-list never leave IDLE. Every
monitored run ends with exactly one notification.
"""

import logging
import time
from typing import Callable, Iterable, Optional

from deploy_guardian.exceptions import NoPriorVersion, PersistenceError
from deploy_guardian.health import HealthProbe
from deploy_guardian.history import ChangelogBuilder, VersionHistory, source_ref_for_tag
from deploy_guardian.gitops import GitRepository
from deploy_guardian.manifest import ManifestMutator, ManifestStore
from deploy_guardian.models import (
    ControllerResult,
    ControllerState,
    DeploymentEvent,
    HealthStatus,
    HealthVerdict,
    NotificationEvent,
    NotificationKind,
    RollbackPlan,
    RollbackReason,
    RunOutcome,
    SyncResult
)
from deploy_guardian.notifications import NotificationDispatcher
from deploy_guardian.planner import RollbackPlanner
from deploy_guardian.state import RunStateStore
from deploy_guardian.sync import SyncNotifier
from deploy_guardian.utils import get_audit_logger, AuditAction
from deploy_guardian.utils.logger import deployment_id_var


logger = logging.getLogger(__name__)

audit_logger = get_audit_logger()


class RollbackController:
    """
    Sequences probe, plan, mutate, sync and notify for one deployment.

    Args:
        probe: Workload readiness probe
        history: Version record reader
        planner: Rollback target selection
        mutator: Manifest write path
        sync: GitOps reconciliation trigger
        dispatcher: Notification fan-out
        changelog: Builds the changelog attached to notifications
        state_store: Optional run-state persistence
        monitored_environments: Environments that get health monitoring
        workloads: Deployments probed in every environment
        settle_delay: Seconds to wait before probing
        health_check_timeout: Upper bound for one probe
        dashboard_url: Link attached to notifications
        sleep: Blocking wait used for the settle delay
    """

    def __init__(
        self,
        probe: HealthProbe,
        history: VersionHistory,
        planner: RollbackPlanner,
        mutator: ManifestMutator,
        sync: SyncNotifier,
        dispatcher: NotificationDispatcher,
        changelog: Optional[ChangelogBuilder] = None,
        state_store: Optional[RunStateStore] = None,
        monitored_environments: Iterable[str] = ('staging', 'prod'),
        workloads: Iterable[str] = ('backend', 'frontend', 'ai-agent'),
        settle_delay: float = 60.0,
        health_check_timeout: float = 10.0,
        dashboard_url: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.probe = probe
        self.history = history
        self.planner = planner
        self.mutator = mutator
        self.sync = sync
        self.dispatcher = dispatcher
        self.changelog = changelog
        self.state_store = state_store
        self.monitored_environments = frozenset(monitored_environments)
        self.workloads = list(workloads)
        self.settle_delay = settle_delay
        self.health_check_timeout = health_check_timeout
        self.dashboard_url = dashboard_url
        self.sleep = sleep

    def _enter(self, result: ControllerResult, state: ControllerState) -> None:
        result.enter(state)
        logger.debug(f"{result.deployment_id} -> {state.value}")
        self._checkpoint(result)

    def _checkpoint(self, result: ControllerResult) -> None:
        if self.state_store is not None:
            self.state_store.save(result)

    def run(self, event: DeploymentEvent) -> ControllerResult:
        """Process one deployment event to a terminal state"""
        token = deployment_id_var.set(event.deployment_id)
        try:
            return self._run(event)
        finally:
            deployment_id_var.reset(token)

    def _run(self, event: DeploymentEvent) -> ControllerResult:
        result = ControllerResult(
            deployment_id=event.deployment_id,
            environment=event.environment,
            tag=event.tag,
            commit=event.commit
        )
        result.enter(ControllerState.IDLE)

        audit_logger.log_event(
            action=AuditAction.DEPLOYMENT_RECEIVED,
            deployment_id=event.deployment_id,
            environment=event.environment,
            tag=event.tag,
            details={"commit": event.commit, "timestamp": event.timestamp}
        )

        if event.environment not in self.monitored_environments:
            logger.info(
                f"Environment {event.environment} is not monitored - "
                f"skipping health check for {event.tag}"
            )
            audit_logger.log_event(
                action=AuditAction.MONITORING_SKIPPED,
                deployment_id=event.deployment_id,
                environment=event.environment,
                tag=event.tag
            )
            result.outcome = RunOutcome.SKIPPED
            self._enter(result, ControllerState.DONE)
            return result

        interrupted = self._interrupted_rollback(event)
        if interrupted is not None:
            return self._resume_rollback(event, result, interrupted)

        self._enter(result, ControllerState.WAITING)
        logger.info(
            f"Waiting {self.settle_delay}s for {event.environment} to settle "
            f"before probing {event.tag}"
        )
        if self.settle_delay > 0:
            self.sleep(self.settle_delay)

        self._enter(result, ControllerState.PROBING)
        verdict = self._probe(event)
        result.verdict = verdict

        if verdict.status is HealthStatus.HEALTHY:
            self._enter(result, ControllerState.SUCCEEDED)
            result.outcome = RunOutcome.SUCCEEDED
            notification = self._success_event(event, verdict)
        else:
            self._enter(result, ControllerState.ROLLING_BACK)
            reason = (
                RollbackReason.HEALTH_UNVERIFIABLE
                if verdict.status is HealthStatus.UNKNOWN
                else RollbackReason.HEALTH_CHECK_FAILED
            )
            notification = self._roll_back(event, result, verdict, reason)

        return self._notify(result, notification)

    def _probe(self, event: DeploymentEvent) -> HealthVerdict:
        audit_logger.log_health_check_started(
            deployment_id=event.deployment_id,
            environment=event.environment,
            workloads=self.workloads,
            timeout_seconds=self.health_check_timeout
        )
        try:
            verdict = self.probe.evaluate(
                event.environment,
                self.workloads,
                self.health_check_timeout
            )
        except Exception as e:
            logger.error(f"Health probe crashed: {e}", exc_info=True)
            verdict = HealthVerdict.unknown(f"Health probe error: {e}")

        audit_logger.log_health_verdict(
            deployment_id=event.deployment_id,
            environment=event.environment,
            tag=event.tag,
            verdict=verdict
        )
        return verdict

    def _roll_back(
        self,
        event: DeploymentEvent,
        result: ControllerResult,
        verdict: HealthVerdict,
        reason: RollbackReason
    ) -> NotificationEvent:
        cause = f"{reason.describe()}: {verdict.reason}"
        logger.warning(f"{event.environment} {event.tag}: {cause} - rolling back")

        try:
            history = self.history.entries(event.environment)
            plan = self.planner.select_target(event.environment, event.tag, history, reason)
            result.plan = plan

            audit_logger.log_rollback_initiated(
                deployment_id=event.deployment_id,
                environment=event.environment,
                current_tag=event.tag,
                target_tag=plan.target_tag,
                reason=reason.value
            )

            result.rollback_commit = self.mutator.apply(
                event.environment, plan.target_tag, cause
            )
            # Persist before syncing so an interrupted run can resume from here
            self._checkpoint(result)
            audit_logger.log_rollback_committed(
                deployment_id=event.deployment_id,
                environment=event.environment,
                target_tag=plan.target_tag,
                commit_id=result.rollback_commit
            )

            return self._sync_and_report(event, result, plan, cause)

        except NoPriorVersion as e:
            return self._failure(
                event, result, e,
                f"{cause}. No prior version to roll back to - manual intervention required"
            )
        except PersistenceError as e:
            target = result.plan.target_tag if result.plan else "previous version"
            return self._failure(
                event, result, e,
                f"{cause}. Rollback to {target} could not be committed: {e}"
            )
        except Exception as e:
            logger.error(f"Unexpected error during rollback: {e}", exc_info=True)
            return self._failure(
                event, result, e,
                f"{cause}. Rollback aborted by unexpected error: {e}"
            )

    def _sync_and_report(
        self,
        event: DeploymentEvent,
        result: ControllerResult,
        plan: RollbackPlan,
        cause: str
    ) -> NotificationEvent:
        result.sync_result = self.sync.trigger(event.environment)
        audit_logger.log_sync(
            deployment_id=event.deployment_id,
            environment=event.environment,
            application=self.sync.application_for(event.environment),
            synced=result.sync_result is SyncResult.SYNCED
        )
        result.outcome = RunOutcome.ROLLED_BACK

        status = "rolled back"
        if result.sync_result is SyncResult.DEFERRED:
            status = "rolled back (sync deferred to GitOps polling)"

        return NotificationEvent(
            kind=NotificationKind.ROLLBACK_TRIGGERED,
            environment=event.environment,
            tag=plan.target_tag,
            commit=result.rollback_commit or "",
            title=f"Rolled back {event.environment} from {plan.current_tag} to {plan.target_tag}",
            status=status,
            reason=cause,
            changelog=self._changelog(event.commit, plan.target_tag),
            channels=self.dispatcher.channel_names,
            link=self.dashboard_url
        )

    def _failure(
        self,
        event: DeploymentEvent,
        result: ControllerResult,
        error: Exception,
        message: str
    ) -> NotificationEvent:
        logger.error(f"Rollback failed for {event.environment}: {message}")
        result.outcome = RunOutcome.FAILED
        result.error = message

        audit_logger.log_rollback_failed(
            deployment_id=event.deployment_id,
            environment=event.environment,
            tag=event.tag,
            error=str(error)
        )
        audit_logger.log_manual_intervention_required(
            deployment_id=event.deployment_id,
            environment=event.environment,
            tag=event.tag,
            reason=type(error).__name__
        )

        return NotificationEvent(
            kind=NotificationKind.DEPLOY_FAILURE,
            environment=event.environment,
            tag=event.tag,
            commit=event.commit,
            title=f"Deployment of {event.tag} to {event.environment} failed",
            status="manual intervention required",
            reason=message,
            changelog=self._changelog(event.commit, None),
            channels=self.dispatcher.channel_names,
            link=self.dashboard_url
        )

    def _success_event(self, event: DeploymentEvent, verdict: HealthVerdict) -> NotificationEvent:
        logger.info(f"{event.environment} is healthy on {event.tag}: {verdict.reason}")
        previous_tag = None
        try:
            previous = self.history.entry_before(event.environment, event.tag)
            previous_tag = previous.tag if previous else None
        except PersistenceError as e:
            logger.warning(f"Cannot determine previous tag for changelog: {e}")

        return NotificationEvent(
            kind=NotificationKind.DEPLOY_SUCCESS,
            environment=event.environment,
            tag=event.tag,
            commit=event.commit,
            title=f"Deployed {event.tag} to {event.environment}",
            status="healthy",
            changelog=self._changelog(event.commit, previous_tag),
            channels=self.dispatcher.channel_names,
            link=self.dashboard_url
        )

    def _changelog(self, current_ref: str, previous_tag: Optional[str]):
        if self.changelog is None:
            return []
        return self.changelog.build(current_ref, source_ref_for_tag(previous_tag or ''))

    def _notify(self, result: ControllerResult, notification: NotificationEvent) -> ControllerResult:
        self._enter(result, ControllerState.NOTIFYING)
        result.notification = notification
        self.dispatcher.send(notification)
        self._enter(result, ControllerState.DONE)
        return result

    def _interrupted_rollback(self, event: DeploymentEvent) -> Optional[dict]:
        """Previous run for this event that committed a rollback but never finished"""
        if self.state_store is None:
            return None
        prior = self.state_store.get(event.deployment_id)
        if (
            prior
            and prior.get('final_state') == ControllerState.ROLLING_BACK.value
            and prior.get('rollback_commit')
            and prior.get('plan')
        ):
            return prior
        return None

    def _resume_rollback(
        self,
        event: DeploymentEvent,
        result: ControllerResult,
        prior: dict
    ) -> ControllerResult:
        plan_data = prior['plan']
        plan = RollbackPlan(
            environment=plan_data['environment'],
            current_tag=plan_data['current_tag'],
            target_tag=plan_data['target_tag'],
            target_commit=plan_data['target_commit'],
            reason=RollbackReason(plan_data['reason'])
        )
        logger.warning(
            f"Resuming interrupted rollback of {event.environment} to {plan.target_tag} "
            f"(commit {prior['rollback_commit'][:7]})"
        )
        result.plan = plan
        result.rollback_commit = prior['rollback_commit']
        self._enter(result, ControllerState.ROLLING_BACK)

        cause = f"{plan.reason.describe()} (resumed after interruption)"
        notification = self._sync_and_report(event, result, plan, cause)
        return self._notify(result, notification)

    @classmethod
    def from_config(cls, cfg, probe: Optional[HealthProbe] = None) -> 'RollbackController':
        """Wire a controller from a GuardianConfig"""
        repo = GitRepository(
            cfg.gitops_repo_path,
            timeout=cfg.git_timeout,
            author_name=cfg.git_author_name,
            author_email=cfg.git_author_email
        )
        store = ManifestStore(
            repo,
            values_file_template=cfg.values_file_template,
            tag_key_path=cfg.tag_key_path,
            remote=cfg.gitops_remote,
            branch=cfg.gitops_branch,
            push=cfg.gitops_push
        )
        source_repo = GitRepository(cfg.source_repo_path, timeout=cfg.git_timeout)

        return cls(
            probe=probe or HealthProbe.from_cluster(cfg.namespace_template),
            history=VersionHistory(store),
            planner=RollbackPlanner(),
            mutator=ManifestMutator(store, max_attempts=cfg.max_write_attempts),
            sync=SyncNotifier(
                cfg.argocd_server,
                cfg.argocd_token,
                app_template=cfg.argocd_app_template,
                app_name=cfg.app_name,
                timeout=cfg.sync_timeout
            ),
            dispatcher=NotificationDispatcher.from_config(cfg),
            changelog=ChangelogBuilder(source_repo, limit=cfg.changelog_limit),
            state_store=RunStateStore.from_config(cfg) if cfg.enable_state_store else None,
            monitored_environments=cfg.monitored_environments,
            workloads=cfg.workloads,
            settle_delay=cfg.settle_delay,
            health_check_timeout=cfg.health_check_timeout,
            dashboard_url=cfg.dashboard_url
        )
