"""
Tests for file storage, rule loading and configuration
"""

import json
from datetime import timedelta

import pytest
import yaml

from conftest import NOW, FakeDevice, FakePrices, FakeWeather

from ess_automation.config import Config
from ess_automation.errors import ConfigurationError
from ess_automation.models import AutomationState, BlackoutWindow, CooldownRecord, CurtailmentConfig, \
    CurtailmentState, ScheduleSegment, UserSettings, WorkMode
from ess_automation.orchestrator import AutomationSettings, Orchestrator
from ess_automation.rules import Rule, parse_rules
from ess_automation.storage import FileStorage

RULES_YAML = """
rules:
  - id: evening
    name: Evening export
    priority: 1
    cooldownMinutes: 15
    conditions:
      feedInPrice: {enabled: true, operator: '>', value: 30}
    action:
      workMode: ForceDischarge
      fdPwr: 6000
  - id: cheap
    priority: 2
    enabled: false
    conditions:
      buyPrice: {operator: '<', value: 5}
    action:
      workMode: ForceCharge
      durationMinutes: 60
"""


@pytest.fixture
def file_storage(tmp_path):
    return FileStorage(str(tmp_path / 'data'), rule_defaults={'duration_minutes': 45, 'cooldown_minutes': 10})


def write_rules(storage, user_id, text=RULES_YAML):
    path = storage.root / user_id / 'rules.yaml'
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


class TestFileStorage:
    """Per-user files under the storage root"""

    def test_state_round_trip(self, file_storage):
        segment = ScheduleSegment(True, WorkMode.FORCE_DISCHARGE, 14, 5, 14, 35, 5000, 20, 35, 90)
        state = AutomationState(enabled=True, last_check=NOW, active_rule_id='r1', active_rule_name='R1',
                                active_until=NOW + timedelta(minutes=30), active_segment=segment,
                                timezone='Australia/Sydney')
        file_storage.save_state('u1', state)
        assert file_storage.load_state('u1') == state

    def test_missing_state_means_not_initialized(self, file_storage):
        assert file_storage.load_state('nobody') is None
        assert file_storage.list_users() == []

    def test_list_users_only_initialized(self, file_storage):
        file_storage.save_state('b', AutomationState())
        file_storage.save_state('a', AutomationState())
        file_storage.save_settings('c', UserSettings(device_id='SN9'))
        assert file_storage.list_users() == ['a', 'b']

    def test_settings_round_trip(self, file_storage):
        settings = UserSettings(device_id='SN1', site_id='site', location='Sydney',
                                blackout_windows=[BlackoutWindow('22:00', '06:00', days=[5, 6])],
                                curtailment=CurtailmentConfig(enabled=True, price_threshold=-1.0))
        file_storage.save_settings('u1', settings)
        assert file_storage.load_settings('u1') == settings

    def test_legacy_settings_keys(self, file_storage):
        path = file_storage.root / 'u1' / 'settings.yaml'
        path.parent.mkdir(parents=True)
        path.write_text("deviceSn: SN7\namberSiteId: 01ABC\nblackoutWindows:\n  - {start: '07:00', end: '09:00'}\n")
        settings = file_storage.load_settings('u1')
        assert settings.device_id == 'SN7'
        assert settings.site_id == '01ABC'
        assert settings.blackout_windows == [BlackoutWindow('07:00', '09:00')]

    def test_cooldowns_and_curtailment_round_trip(self, file_storage):
        cooldowns = {'r1': CooldownRecord('r1', NOW, 15)}
        file_storage.save_cooldowns('u1', cooldowns)
        file_storage.save_curtailment('u1', CurtailmentState(True, -2.5, NOW))
        assert file_storage.load_cooldowns('u1') == cooldowns
        assert file_storage.load_curtailment('u1') == CurtailmentState(True, -2.5, NOW)
        assert file_storage.load_curtailment('other') == CurtailmentState()

    def test_rules_loaded_with_defaults(self, file_storage):
        write_rules(file_storage, 'u1')
        evening, cheap = file_storage.load_rules('u1')
        assert evening.name == 'Evening export'
        assert evening.cooldown_minutes == 15
        assert evening.action.duration_minutes == 45
        assert evening.action.power_watts == 6000
        assert cheap.enabled is False
        assert cheap.cooldown_minutes == 10
        assert cheap.action.duration_minutes == 60

    def test_invalid_yaml(self, file_storage):
        write_rules(file_storage, 'u1', "rules: [unclosed")
        with pytest.raises(ConfigurationError):
            file_storage.load_rules('u1')

    def test_audit_is_append_only(self, file_storage):
        file_storage.save_state('u1', AutomationState(enabled=True))
        assert file_storage.read_audit('u1') == []
        path = file_storage.root / 'u1' / 'audit.jsonl'
        with open(path, 'a') as f:
            f.write(json.dumps({'outcome': 'no-match'}) + '\n')
            f.write(json.dumps({'outcome': 'triggered'}) + '\n')
        assert [e['outcome'] for e in file_storage.read_audit('u1')] == ['no-match', 'triggered']
        assert file_storage.read_audit('u1', limit=1) == [{'outcome': 'triggered'}]


@pytest.mark.asyncio
class TestFileBackedCycle:
    async def test_cycle_persists_to_files(self, file_storage):
        write_rules(file_storage, 'u1')
        file_storage.save_settings('u1', UserSettings(device_id='SN1', site_id='site-1'))
        file_storage.save_state('u1', AutomationState(enabled=True))
        device = FakeDevice()
        orchestrator = Orchestrator(file_storage, device, FakePrices(), FakeWeather(),
                                    AutomationSettings(verify_delay_seconds=0), clock=lambda: NOW)

        result = await orchestrator.run_cycle('u1')

        assert result.matched_rule == 'Evening export'
        assert result.segment.power_watts == 6000
        assert file_storage.load_state('u1').active_until == NOW + timedelta(minutes=45)
        assert file_storage.load_cooldowns('u1')['evening'].cooldown_minutes == 15
        audit = file_storage.read_audit('u1')
        assert audit[-1]['outcome'] == 'triggered'
        assert audit[-1]['timestamp'] == NOW.isoformat()

    async def test_unloadable_rule_does_not_block_the_others(self, file_storage):
        write_rules(file_storage, 'u1', """
rules:
  - id: good
    priority: 1
    conditions:
      feedInPrice: {enabled: true, operator: '>', value: 30}
    action: {workMode: ForceDischarge}
  - id: legacy
    priority: 2
    conditions:
      uvIndex: {enabled: true, operator: '>', value: 6}
    action: {workMode: ForceCharge}
""")
        file_storage.save_settings('u1', UserSettings(device_id='SN1', site_id='site-1'))
        file_storage.save_state('u1', AutomationState(enabled=True))
        orchestrator = Orchestrator(file_storage, FakeDevice(), FakePrices(), FakeWeather(),
                                    AutomationSettings(verify_delay_seconds=0), clock=lambda: NOW)

        result = await orchestrator.run_cycle('u1')

        assert result.triggered is True
        assert result.rule_id == 'good'
        assert [r.id for r in file_storage.load_rules('u1')] == ['good']


class TestParseRules:
    def test_mapping_form_uses_keys_as_ids(self):
        rules = parse_rules({'a': {'action': {'workMode': 'SelfUse'}}})
        assert rules[0].id == 'a'
        assert rules[0].priority == 100

    def test_empty(self):
        assert parse_rules(None) == []

    def test_missing_id_is_skipped(self):
        rules = parse_rules([{'action': {'workMode': 'SelfUse'}}, {'id': 'ok', 'action': {'workMode': 'SelfUse'}}])
        assert [r.id for r in rules] == ['ok']

    def test_unknown_work_mode_is_skipped(self):
        assert parse_rules([{'id': 'x', 'action': {'workMode': 'Teleport'}}]) == []

    def test_unknown_enabled_condition_is_skipped(self):
        rules = parse_rules({
            'uv': {'conditions': {'uvIndex': {'enabled': True, 'value': 6}}, 'action': {'workMode': 'SelfUse'}},
            'soc': {'conditions': {'soc': {'operator': '<', 'value': 20}}, 'action': {'workMode': 'ForceCharge'}},
        })
        assert [r.id for r in rules] == ['soc']

    def test_single_rule_still_raises(self):
        with pytest.raises(ConfigurationError):
            Rule.from_dict({'action': {'workMode': 'SelfUse'}})


class TestConfig:
    """Test configuration loading"""

    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for var in ('FOXESS_TOKEN', 'AMBER_API_KEY', 'ESS_STORAGE_PATH'):
            monkeypatch.setenv(var, '')
            monkeypatch.delenv(var)

    def test_yaml_merged_over_defaults(self, tmp_path):
        (tmp_path / 'config.yaml').write_text(yaml.safe_dump({
            'foxess': {'token': 'abc'},
            'automation': {'interval_seconds': 120},
        }))
        config = Config('config.yaml')
        assert config['foxess']['token'] == 'abc'
        assert config.section('automation')['interval_seconds'] == 120
        assert config.section('automation')['error_blackout_minutes'] == 5
        assert config.section('cache')['weather_ttl_seconds'] == 1800

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        (tmp_path / 'config.yaml').write_text(yaml.safe_dump({'foxess': {'token': 'from-yaml'}}))
        monkeypatch.setenv('FOXESS_TOKEN', 'from-env')
        monkeypatch.setenv('ESS_STORAGE_PATH', '/var/ess')
        config = Config('config.yaml')
        assert config['foxess']['token'] == 'from-env'
        assert config.section('storage')['path'] == '/var/ess'

    def test_dotenv_file_loaded(self, tmp_path):
        (tmp_path / '.env').write_text("# credentials\nFOXESS_TOKEN=dotenv-token\n")
        config = Config('missing.yaml')
        assert config['foxess']['token'] == 'dotenv-token'

    def test_missing_token(self):
        with pytest.raises(ValueError):
            Config('missing.yaml')

    def test_non_positive_interval(self, tmp_path):
        (tmp_path / 'config.yaml').write_text(yaml.safe_dump({
            'foxess': {'token': 'abc'},
            'automation': {'interval_seconds': 0},
        }))
        with pytest.raises(ValueError):
            Config('config.yaml')

    def test_automation_settings_from_config(self, tmp_path):
        (tmp_path / 'config.yaml').write_text(yaml.safe_dump({
            'foxess': {'token': 'abc'},
            'cache': {'price_ttl_seconds': 30},
        }))
        settings = AutomationSettings.from_config(Config('config.yaml'))
        assert settings.price_ttl_seconds == 30
        assert settings.interval_seconds == 60
        assert settings.default_timezone == 'Australia/Sydney'
