import json
from unittest.mock import Mock

import pytest
import redis

from deploy_guardian.models import ControllerResult, ControllerState, RunOutcome
from deploy_guardian.state import RunStateStore


@pytest.fixture
def redis_client():
    return Mock()


@pytest.fixture
def store(redis_client):
    return RunStateStore(redis_client, ttl=3600)


def result(deployment_id='prod-main-abc1234-a1b2c3d', environment='prod', timestamp=None):
    run = ControllerResult(
        deployment_id=deployment_id,
        environment=environment,
        tag='main-abc1234',
        commit='a1b2c3d4'
    )
    run.enter(ControllerState.IDLE)
    run.enter(ControllerState.DONE)
    run.outcome = RunOutcome.SUCCEEDED
    if timestamp is not None:
        run.timestamp = timestamp
    return run


class TestRunStateStore:
    """Test run persistence in Redis"""

    def test_save(self, store, redis_client):
        assert store.save(result()) is True

        key, ttl, payload = redis_client.setex.call_args.args
        assert key == 'run:prod-main-abc1234-a1b2c3d'
        assert ttl == 3600
        data = json.loads(payload)
        assert data['final_state'] == 'done'
        assert data['outcome'] == 'succeeded'
        assert data['states'] == ['idle', 'done']

    def test_save_failure_is_not_fatal(self, store, redis_client):
        redis_client.setex.side_effect = redis.ConnectionError('down')
        assert store.save(result()) is False

    def test_get(self, store, redis_client):
        redis_client.get.return_value = json.dumps(result().to_dict())

        data = store.get('prod-main-abc1234-a1b2c3d')

        assert data['tag'] == 'main-abc1234'
        redis_client.get.assert_called_once_with('run:prod-main-abc1234-a1b2c3d')

    def test_get_missing(self, store, redis_client):
        redis_client.get.return_value = None
        assert store.get('nope') is None

    def test_get_failure_returns_none(self, store, redis_client):
        redis_client.get.side_effect = redis.TimeoutError()
        assert store.get('prod-main-abc1234-a1b2c3d') is None

    def test_recent_sorted_and_filtered(self, store, redis_client):
        runs = {
            'run:a': json.dumps(result('a', 'prod', 100.0).to_dict()),
            'run:b': json.dumps(result('b', 'staging', 300.0).to_dict()),
            'run:c': json.dumps(result('c', 'prod', 200.0).to_dict()),
        }
        redis_client.scan_iter.return_value = list(runs)
        redis_client.get.side_effect = runs.get

        assert [r['deployment_id'] for r in store.recent()] == ['b', 'c', 'a']
        assert [r['deployment_id'] for r in store.recent('prod')] == ['c', 'a']
        assert [r['deployment_id'] for r in store.recent(limit=1)] == ['b']

    def test_ping(self, store, redis_client):
        redis_client.ping.return_value = True
        assert store.ping() is True

        redis_client.ping.side_effect = redis.ConnectionError('down')
        assert store.ping() is False
