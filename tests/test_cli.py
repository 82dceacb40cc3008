import json
from unittest.mock import patch

import pytest

from deploy_guardian import __main__ as cli
from deploy_guardian import config as config_module
from deploy_guardian.models import ControllerResult, RunOutcome


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    monkeypatch.setenv('LOG_FORMAT', 'text')
    monkeypatch.setenv('LOG_LEVEL', 'ERROR')
    monkeypatch.setattr(config_module, '_config', None)


def finished(event, outcome):
    result = ControllerResult(
        deployment_id=event.deployment_id,
        environment=event.environment,
        tag=event.tag,
        commit=event.commit
    )
    result.outcome = outcome
    return result


@pytest.mark.parametrize('outcome,exit_code', [
    (RunOutcome.SUCCEEDED, 0),
    (RunOutcome.SKIPPED, 0),
    (RunOutcome.ROLLED_BACK, 1),
    (RunOutcome.FAILED, 1),
])
def test_monitor_exit_code(outcome, exit_code, capsys):
    with patch('deploy_guardian.controller.RollbackController.from_config') as from_config:
        from_config.return_value.run.side_effect = lambda event: finished(event, outcome)

        code = cli.main([
            'monitor', '--environment', 'prod', '--tag', 'main-abc1234',
            '--commit', 'a1b2c3d4e5f6', '--settle-delay', '0'
        ])

    assert code == exit_code
    assert json.loads(capsys.readouterr().out)['outcome'] == outcome.value
    assert from_config.call_args.args[0].settle_delay == 0


def test_monitor_rejects_unknown_environment():
    with pytest.raises(SystemExit):
        cli.main(['monitor', '--environment', 'qa', '--tag', 't', '--commit', 'c'])


def test_serve_runs_uvicorn():
    with patch('uvicorn.run') as run:
        assert cli.main(['serve', '--port', '9000']) == 0

    assert run.call_args.args[0] == 'deploy_guardian.api:app'
    assert run.call_args.kwargs['port'] == 9000
