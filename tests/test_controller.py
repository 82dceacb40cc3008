import pytest
from unittest.mock import Mock

from conftest import second_clone, write_values
from deploy_guardian.controller import RollbackController
from deploy_guardian.exceptions import PersistenceError
from deploy_guardian.history import VersionHistory
from deploy_guardian.manifest import ManifestMutator, ManifestStore
from deploy_guardian.models import (
    ControllerState,
    DeploymentEvent,
    HealthStatus,
    HealthVerdict,
    NotificationKind,
    RollbackReason,
    RunOutcome,
    SyncResult,
    VersionEntry,
    WorkloadHealth
)
from deploy_guardian.planner import RollbackPlanner


ROLLBACK_COMMIT = '9f8e7d6c5b4a39281706f5e4d3c2b1a098765432'

PROD_HISTORY = [
    VersionEntry('main-abc1232', 'c' * 40, 1000.0),
    VersionEntry('main-abc1233', 'b' * 40, 2000.0),
    VersionEntry('main-abc1234', 'a' * 40, 3000.0),
]


def healthy():
    return HealthVerdict(
        HealthStatus.HEALTHY,
        "all workloads ready",
        (WorkloadHealth('backend', 2, 2), WorkloadHealth('frontend', 2, 2))
    )


def unhealthy():
    return HealthVerdict(
        HealthStatus.UNHEALTHY,
        "backend 0/3 ready",
        (WorkloadHealth('backend', 3, 0),)
    )


@pytest.fixture
def deps():
    """Collaborators with happy-path defaults"""
    probe = Mock()
    probe.evaluate.return_value = healthy()

    history = Mock()
    history.entries.return_value = list(PROD_HISTORY)
    history.entry_before.return_value = PROD_HISTORY[1]

    mutator = Mock()
    mutator.apply.return_value = ROLLBACK_COMMIT

    sync = Mock()
    sync.trigger.return_value = SyncResult.SYNCED
    sync.application_for.side_effect = lambda env: f'platform-{env}'

    dispatcher = Mock()
    dispatcher.channel_names = ['slack', 'teams']

    changelog = Mock()
    changelog.build.return_value = []

    return {
        'probe': probe,
        'history': history,
        'planner': RollbackPlanner(),
        'mutator': mutator,
        'sync': sync,
        'dispatcher': dispatcher,
        'changelog': changelog,
    }


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def controller(deps, sleep):
    return RollbackController(
        settle_delay=60,
        health_check_timeout=10,
        dashboard_url='https://grafana.example.com/d/deploys',
        sleep=sleep,
        **deps
    )


def prod_event(tag='main-abc1234'):
    return DeploymentEvent('prod', tag, 'a1b2c3d4e5f60718293a4b5c6d7e8f9012345678')


def sent_notifications(deps):
    return [c.args[0] for c in deps['dispatcher'].send.call_args_list]


class TestHealthyDeployment:
    """Healthy deployments end in a single success notification"""

    def test_staging_healthy(self, controller, deps, sleep):
        event = DeploymentEvent('staging', 'main-abc1234', 'a1b2c3d4e5f6')

        result = controller.run(event)

        assert result.outcome is RunOutcome.SUCCEEDED
        assert result.final_state is ControllerState.DONE
        sleep.assert_called_once_with(60)
        deps['probe'].evaluate.assert_called_once_with(
            'staging', ['backend', 'frontend', 'ai-agent'], 10
        )
        deps['mutator'].apply.assert_not_called()

        notifications = sent_notifications(deps)
        assert len(notifications) == 1
        assert notifications[0].kind is NotificationKind.DEPLOY_SUCCESS
        assert notifications[0].tag == 'main-abc1234'
        assert notifications[0].channels == ['slack', 'teams']

    def test_state_trail(self, controller):
        result = controller.run(prod_event())

        assert result.states == [
            ControllerState.IDLE,
            ControllerState.WAITING,
            ControllerState.PROBING,
            ControllerState.SUCCEEDED,
            ControllerState.NOTIFYING,
            ControllerState.DONE,
        ]

    def test_success_changelog_spans_previous_tag(self, controller, deps):
        controller.run(prod_event())

        deps['changelog'].build.assert_called_once_with(
            'a1b2c3d4e5f60718293a4b5c6d7e8f9012345678', 'abc1233'
        )

    def test_previous_tag_lookup_failure_still_notifies(self, controller, deps):
        deps['history'].entry_before.side_effect = PersistenceError('git log failed')

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.SUCCEEDED
        assert len(sent_notifications(deps)) == 1


class TestRollback:
    """Unhealthy deployments are rolled back to the preceding version"""

    def test_unhealthy_prod_rolls_back(self, controller, deps):
        deps['probe'].evaluate.return_value = unhealthy()

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.ROLLED_BACK
        assert result.plan.target_tag == 'main-abc1233'
        assert result.plan.reason is RollbackReason.HEALTH_CHECK_FAILED
        assert result.rollback_commit == ROLLBACK_COMMIT
        deps['mutator'].apply.assert_called_once()
        assert deps['mutator'].apply.call_args.args[:2] == ('prod', 'main-abc1233')
        deps['sync'].trigger.assert_called_once_with('prod')

        notifications = sent_notifications(deps)
        assert len(notifications) == 1
        notification = notifications[0]
        assert notification.kind is NotificationKind.ROLLBACK_TRIGGERED
        assert notification.tag == 'main-abc1233'
        assert notification.commit == ROLLBACK_COMMIT
        assert 'health check failed' in notification.reason
        assert 'backend 0/3 ready' in notification.reason

    def test_rollback_state_trail(self, controller, deps):
        deps['probe'].evaluate.return_value = unhealthy()

        result = controller.run(prod_event())

        assert result.states == [
            ControllerState.IDLE,
            ControllerState.WAITING,
            ControllerState.PROBING,
            ControllerState.ROLLING_BACK,
            ControllerState.NOTIFYING,
            ControllerState.DONE,
        ]

    def test_unknown_health_rolls_back_with_distinct_reason(self, controller, deps):
        deps['probe'].evaluate.return_value = HealthVerdict.unknown("timed out after 10s")

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.ROLLED_BACK
        assert result.plan.reason is RollbackReason.HEALTH_UNVERIFIABLE
        notification = sent_notifications(deps)[0]
        assert notification.kind is NotificationKind.ROLLBACK_TRIGGERED
        assert 'health could not be verified' in notification.reason
        assert 'health check failed' not in notification.reason

    def test_probe_crash_counts_as_unknown(self, controller, deps):
        deps['probe'].evaluate.side_effect = RuntimeError('kubeconfig missing')

        result = controller.run(prod_event())

        assert result.verdict.status is HealthStatus.UNKNOWN
        assert result.plan.reason is RollbackReason.HEALTH_UNVERIFIABLE

    def test_deferred_sync_still_reports_rollback(self, controller, deps):
        deps['probe'].evaluate.return_value = unhealthy()
        deps['sync'].trigger.return_value = SyncResult.DEFERRED

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.ROLLED_BACK
        assert result.sync_result is SyncResult.DEFERRED
        notification = sent_notifications(deps)[0]
        assert notification.kind is NotificationKind.ROLLBACK_TRIGGERED
        assert 'deferred' in notification.status

    def test_no_prior_version_reports_failure(self, controller, deps):
        deps['probe'].evaluate.return_value = unhealthy()
        deps['history'].entries.return_value = [PROD_HISTORY[2]]

        result = controller.run(DeploymentEvent('staging', 'main-abc1234', 'a1b2c3d4e5f6'))

        assert result.outcome is RunOutcome.FAILED
        deps['mutator'].apply.assert_not_called()
        deps['sync'].trigger.assert_not_called()
        notifications = sent_notifications(deps)
        assert len(notifications) == 1
        assert notifications[0].kind is NotificationKind.DEPLOY_FAILURE
        assert 'manual intervention' in notifications[0].reason

    def test_persistence_error_reports_failure(self, controller, deps):
        deps['probe'].evaluate.return_value = unhealthy()
        deps['mutator'].apply.side_effect = PersistenceError('push rejected 3 times')

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.FAILED
        assert 'main-abc1233' in result.error
        deps['sync'].trigger.assert_not_called()
        notifications = sent_notifications(deps)
        assert len(notifications) == 1
        assert notifications[0].kind is NotificationKind.DEPLOY_FAILURE

    def test_notification_failure_does_not_change_outcome(self, controller, deps):
        deps['probe'].evaluate.return_value = unhealthy()
        deps['dispatcher'].send.return_value = {'slack': False, 'teams': False}

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.ROLLED_BACK
        assert result.final_state is ControllerState.DONE


class TestUnmonitoredEnvironment:
    """Environments outside the allow-list are skipped"""

    def test_dev_is_skipped(self, controller, deps, sleep):
        event = DeploymentEvent('dev', 'main-abc1234', 'a1b2c3d4e5f6')

        result = controller.run(event)

        assert result.outcome is RunOutcome.SKIPPED
        assert result.states == [ControllerState.IDLE, ControllerState.DONE]
        sleep.assert_not_called()
        deps['probe'].evaluate.assert_not_called()
        deps['mutator'].apply.assert_not_called()
        deps['dispatcher'].send.assert_not_called()

    def test_custom_allow_list(self, deps, sleep):
        controller = RollbackController(
            monitored_environments=['prod'], sleep=sleep, **deps
        )

        result = controller.run(DeploymentEvent('staging', 'main-abc1234', 'a1b2c3d'))

        assert result.outcome is RunOutcome.SKIPPED


class TestRunState:
    """Run state checkpoints and resumption of interrupted rollbacks"""

    def test_states_are_checkpointed(self, deps, sleep):
        store = Mock()
        store.get.return_value = None
        controller = RollbackController(state_store=store, sleep=sleep, **deps)

        controller.run(prod_event())

        saved = store.save.call_args_list[-1].args[0]
        assert saved.final_state is ControllerState.DONE
        assert store.save.call_count >= 5

    def test_rollback_commit_is_checkpointed_before_sync(self, deps, sleep):
        deps['probe'].evaluate.return_value = unhealthy()
        store = Mock()
        store.get.return_value = None
        snapshots = []
        store.save.side_effect = lambda result: snapshots.append(result.to_dict())
        deps['sync'].trigger.side_effect = lambda env: (
            snapshots.append('sync') or SyncResult.SYNCED
        )
        controller = RollbackController(state_store=store, sleep=sleep, **deps)

        controller.run(prod_event())

        sync_index = snapshots.index('sync')
        before_sync = snapshots[sync_index - 1]
        assert before_sync['final_state'] == 'rolling_back'
        assert before_sync['rollback_commit'] == ROLLBACK_COMMIT

    def test_interrupted_rollback_is_resumed(self, deps, sleep):
        store = Mock()
        store.get.return_value = {
            'final_state': 'rolling_back',
            'rollback_commit': ROLLBACK_COMMIT,
            'plan': {
                'environment': 'prod',
                'current_tag': 'main-abc1234',
                'target_tag': 'main-abc1233',
                'target_commit': 'b' * 40,
                'reason': 'health_check_failed',
            },
        }
        controller = RollbackController(state_store=store, sleep=sleep, **deps)

        result = controller.run(prod_event())

        assert result.outcome is RunOutcome.ROLLED_BACK
        sleep.assert_not_called()
        deps['probe'].evaluate.assert_not_called()
        deps['mutator'].apply.assert_not_called()
        deps['sync'].trigger.assert_called_once_with('prod')
        notifications = sent_notifications(deps)
        assert len(notifications) == 1
        assert notifications[0].kind is NotificationKind.ROLLBACK_TRIGGERED
        assert notifications[0].commit == ROLLBACK_COMMIT

    def test_finished_run_is_not_resumed(self, deps, sleep):
        store = Mock()
        store.get.return_value = {'final_state': 'done', 'rollback_commit': ROLLBACK_COMMIT}
        controller = RollbackController(state_store=store, sleep=sleep, **deps)

        controller.run(prod_event())

        deps['probe'].evaluate.assert_called_once()


@pytest.mark.parametrize('status,kind', [
    (HealthStatus.HEALTHY, NotificationKind.DEPLOY_SUCCESS),
    (HealthStatus.UNHEALTHY, NotificationKind.ROLLBACK_TRIGGERED),
    (HealthStatus.UNKNOWN, NotificationKind.ROLLBACK_TRIGGERED),
])
def test_exactly_one_notification_per_monitored_run(controller, deps, status, kind):
    deps['probe'].evaluate.return_value = HealthVerdict(status, "probe result")

    controller.run(prod_event())

    notifications = sent_notifications(deps)
    assert [n.kind for n in notifications] == [kind]


class TestRollbackAgainstGitops:
    """Rollbacks read and write a real manifest repository"""

    def test_rollback_targets_latest_remote_history(self, remote_pair, tmp_path, sleep):
        remote, clone = remote_pair
        # The pipeline publishes two more deployments the local checkout has not seen
        pipeline = second_clone(remote, tmp_path / 'pipeline')
        write_values(pipeline, 'prod', 'main-abc1235')
        write_values(pipeline, 'prod', 'main-abc1236')
        pipeline.push('origin', 'main')

        store = ManifestStore(clone, push=True)
        probe = Mock()
        probe.evaluate.return_value = unhealthy()
        sync = Mock()
        sync.trigger.return_value = SyncResult.SYNCED
        sync.application_for.return_value = 'platform-prod'
        dispatcher = Mock()
        dispatcher.channel_names = ['slack']
        controller = RollbackController(
            probe=probe,
            history=VersionHistory(store),
            planner=RollbackPlanner(),
            mutator=ManifestMutator(store),
            sync=sync,
            dispatcher=dispatcher,
            sleep=sleep
        )

        result = controller.run(prod_event('main-abc1236'))

        assert result.outcome is RunOutcome.ROLLED_BACK
        assert result.plan.target_tag == 'main-abc1235'
        observer = second_clone(remote, tmp_path / 'observer')
        assert observer.head() == result.rollback_commit
        assert ManifestStore(observer, push=False).committed_tag('prod') == 'main-abc1235'
        assert dispatcher.send.call_args.args[0].tag == 'main-abc1235'
