"""
Tests for the trigger sources: all-users sweep, session loop, CLI and Lambda handler
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from conftest import USER, make_rule, setup_user

from ess_automation.__main__ import parse_args
from ess_automation.models import CycleResult, SkipReason
from ess_automation.runner import run_all_users, run_session


@pytest.mark.asyncio
class TestRunAllUsers:
    """Periodic sweep over initialized users"""

    async def test_runs_every_initialized_user(self, orchestrator, storage):
        setup_user(storage, [make_rule('r1')], user_id='a')
        setup_user(storage, [make_rule('r1')], user_id='b', enabled=False)

        results = await run_all_users(orchestrator)

        assert [r.user_id for r in results] == ['a', 'b']
        assert results[0].triggered is True
        assert results[1].skipped == SkipReason.DISABLED

    async def test_one_failure_does_not_stop_the_sweep(self, orchestrator, storage):
        setup_user(storage, [make_rule('r1')], user_id='a')
        setup_user(storage, [make_rule('r1')], user_id='b')
        original = orchestrator.run_cycle

        async def flaky(user_id, **kwargs):
            if user_id == 'a':
                raise RuntimeError('storage offline')
            return await original(user_id, **kwargs)

        with patch.object(orchestrator, 'run_cycle', side_effect=flaky):
            results = await run_all_users(orchestrator)

        assert results[0].error == 'RuntimeError: storage offline'
        assert results[1].triggered is True


@pytest.mark.asyncio
class TestRunSession:
    async def test_stops_after_max_cycles(self, orchestrator, storage):
        setup_user(storage, [make_rule('r1')])

        async def no_wait(coro, timeout):
            coro.close()
            raise asyncio.TimeoutError

        with patch.object(orchestrator, 'run_cycle', AsyncMock(return_value=CycleResult(USER))) as run_cycle, \
                patch('ess_automation.runner.asyncio.wait_for', new=no_wait):
            cycles = await run_session(orchestrator, USER, max_cycles=3)
        assert cycles == 3
        assert run_cycle.await_count == 3

    async def test_stop_event_ends_loop(self, orchestrator, storage):
        setup_user(storage, [make_rule('r1')])
        stop = asyncio.Event()
        stop.set()
        assert await run_session(orchestrator, USER, stop=stop) == 0

    async def test_session_and_sweep_share_the_throttle(self, orchestrator, storage, device):
        setup_user(storage, [make_rule('r1')])
        await run_session(orchestrator, USER, max_cycles=1)
        results = await run_all_users(orchestrator)
        assert results[0].skipped == SkipReason.TOO_SOON
        assert len(device.writes) == 1


class TestParseArgs:
    def test_cycle_dry_run(self):
        args = parse_args(['cycle', '--user', 'u1', '--dry-run'])
        assert args.command == 'cycle'
        assert args.user == 'u1'
        assert args.dry_run is True
        assert args.config == 'config.yaml'

    def test_global_options(self):
        args = parse_args(['-c', 'other.yaml', '-v', 'status', '-u', 'u1'])
        assert args.config == 'other.yaml'
        assert args.verbose is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestLambdaHandler:
    """Test Lambda entry point"""

    def test_missing_token_is_bad_request(self, monkeypatch):
        from lambda_handler import lambda_handler

        monkeypatch.delenv('FOXESS_TOKEN', raising=False)
        response = lambda_handler({}, None)
        assert response['statusCode'] == 400
        assert 'FOXESS_TOKEN' in json.loads(response['body'])['error']

    def test_success(self, monkeypatch):
        from lambda_handler import lambda_handler

        monkeypatch.setenv('FOXESS_TOKEN', 'tok')
        summary = {'success': True, 'users': 2, 'triggered': 1, 'results': []}
        with patch('lambda_handler.run_automation', AsyncMock(return_value=summary)) as run:
            response = lambda_handler({'user_id': USER, 'dry_run': True}, None)
        assert response['statusCode'] == 200
        assert json.loads(response['body'])['triggered'] == 1
        run.assert_awaited_once_with('config.yaml', USER, True)

    def test_user_errors_are_reported(self, monkeypatch):
        from lambda_handler import lambda_handler

        monkeypatch.setenv('FOXESS_TOKEN', 'tok')
        summary = {'success': False, 'users': 1, 'triggered': 0, 'results': []}
        with patch('lambda_handler.run_automation', AsyncMock(return_value=summary)):
            assert lambda_handler({}, None)['statusCode'] == 500

    def test_exception_is_server_error(self, monkeypatch):
        from lambda_handler import lambda_handler

        monkeypatch.setenv('FOXESS_TOKEN', 'tok')
        with patch('lambda_handler.run_automation', AsyncMock(side_effect=ValueError('bad config'))):
            response = lambda_handler({}, None)
        body = json.loads(response['body'])
        assert response['statusCode'] == 500
        assert body['error_type'] == 'ValueError'
