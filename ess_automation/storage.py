"""Persistence for per-user settings, rules, automation state, cooldowns and audit"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError
from .models import AuditEntry, AutomationState, CooldownRecord, CurtailmentState, UserSettings
from .rules import Rule, parse_rules

logger = logging.getLogger(__name__)


class Storage(ABC):
    """Settings and rules are owned by the user; state, cooldowns and audit by the automation"""

    @abstractmethod
    def list_users(self) -> List[str]:
        """Users with automation state (i.e. initialized)"""

    @abstractmethod
    def load_settings(self, user_id: str) -> UserSettings: ...

    @abstractmethod
    def save_settings(self, user_id: str, settings: UserSettings) -> None: ...

    @abstractmethod
    def load_rules(self, user_id: str) -> List[Rule]: ...

    @abstractmethod
    def load_state(self, user_id: str) -> Optional[AutomationState]: ...

    @abstractmethod
    def save_state(self, user_id: str, state: AutomationState) -> None: ...

    @abstractmethod
    def load_cooldowns(self, user_id: str) -> Dict[str, CooldownRecord]: ...

    @abstractmethod
    def save_cooldowns(self, user_id: str, cooldowns: Dict[str, CooldownRecord]) -> None: ...

    @abstractmethod
    def load_curtailment(self, user_id: str) -> CurtailmentState: ...

    @abstractmethod
    def save_curtailment(self, user_id: str, state: CurtailmentState) -> None: ...

    @abstractmethod
    def append_audit(self, user_id: str, entry: AuditEntry) -> None: ...

    @abstractmethod
    def read_audit(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...


class MemoryStorage(Storage):
    """In-process storage for tests and dry runs"""

    def __init__(self):
        self.settings: Dict[str, UserSettings] = {}
        self.rules: Dict[str, List[Rule]] = {}
        self.states: Dict[str, AutomationState] = {}
        self.cooldowns: Dict[str, Dict[str, CooldownRecord]] = {}
        self.curtailment: Dict[str, CurtailmentState] = {}
        self.audit: Dict[str, List[Dict[str, Any]]] = {}

    def list_users(self) -> List[str]:
        return sorted(self.states)

    def load_settings(self, user_id: str) -> UserSettings:
        return self.settings.get(user_id) or UserSettings()

    def save_settings(self, user_id: str, settings: UserSettings) -> None:
        self.settings[user_id] = settings

    def load_rules(self, user_id: str) -> List[Rule]:
        return list(self.rules.get(user_id, []))

    def save_rules(self, user_id: str, rules: List[Rule]) -> None:
        self.rules[user_id] = list(rules)

    def load_state(self, user_id: str) -> Optional[AutomationState]:
        return self.states.get(user_id)

    def save_state(self, user_id: str, state: AutomationState) -> None:
        self.states[user_id] = state

    def load_cooldowns(self, user_id: str) -> Dict[str, CooldownRecord]:
        return dict(self.cooldowns.get(user_id, {}))

    def save_cooldowns(self, user_id: str, cooldowns: Dict[str, CooldownRecord]) -> None:
        self.cooldowns[user_id] = dict(cooldowns)

    def load_curtailment(self, user_id: str) -> CurtailmentState:
        return self.curtailment.get(user_id) or CurtailmentState()

    def save_curtailment(self, user_id: str, state: CurtailmentState) -> None:
        self.curtailment[user_id] = state

    def append_audit(self, user_id: str, entry: AuditEntry) -> None:
        self.audit.setdefault(user_id, []).append(entry.to_dict())

    def read_audit(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        entries = self.audit.get(user_id, [])
        return entries[-limit:] if limit else list(entries)


class FileStorage(Storage):
    """One directory per user: YAML for what users edit, JSON for what the automation writes

        <root>/<user_id>/settings.yaml
        <root>/<user_id>/rules.yaml
        <root>/<user_id>/state.json
        <root>/<user_id>/cooldowns.json
        <root>/<user_id>/curtailment.json
        <root>/<user_id>/audit.jsonl
    """

    def __init__(self, root: str, rule_defaults: Optional[Dict[str, Any]] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.rule_defaults = rule_defaults or {}

    def _user_dir(self, user_id: str) -> Path:
        path = self.root / user_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to load {path}: {e}")
            return None

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(path.suffix + '.tmp')
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)

    def _read_yaml(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    def list_users(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if (p / 'state.json').exists())

    def load_settings(self, user_id: str) -> UserSettings:
        return UserSettings.from_dict(self._read_yaml(self._user_dir(user_id) / 'settings.yaml'))

    def save_settings(self, user_id: str, settings: UserSettings) -> None:
        with open(self._user_dir(user_id) / 'settings.yaml', 'w') as f:
            yaml.safe_dump(settings.to_dict(), f, sort_keys=False)

    def load_rules(self, user_id: str) -> List[Rule]:
        data = self._read_yaml(self._user_dir(user_id) / 'rules.yaml')
        if isinstance(data, dict) and 'rules' in data:
            data = data['rules']
        return parse_rules(data, self.rule_defaults)

    def load_state(self, user_id: str) -> Optional[AutomationState]:
        data = self._read_json(self.root / user_id / 'state.json')
        return AutomationState.from_dict(data) if data is not None else None

    def save_state(self, user_id: str, state: AutomationState) -> None:
        self._write_json(self._user_dir(user_id) / 'state.json', state.to_dict())

    def load_cooldowns(self, user_id: str) -> Dict[str, CooldownRecord]:
        data = self._read_json(self._user_dir(user_id) / 'cooldowns.json') or {}
        return {rule_id: CooldownRecord.from_dict(record) for rule_id, record in data.items()}

    def save_cooldowns(self, user_id: str, cooldowns: Dict[str, CooldownRecord]) -> None:
        self._write_json(self._user_dir(user_id) / 'cooldowns.json',
                         {rule_id: record.to_dict() for rule_id, record in cooldowns.items()})

    def load_curtailment(self, user_id: str) -> CurtailmentState:
        return CurtailmentState.from_dict(self._read_json(self._user_dir(user_id) / 'curtailment.json'))

    def save_curtailment(self, user_id: str, state: CurtailmentState) -> None:
        self._write_json(self._user_dir(user_id) / 'curtailment.json', state.to_dict())

    def append_audit(self, user_id: str, entry: AuditEntry) -> None:
        with open(self._user_dir(user_id) / 'audit.jsonl', 'a') as f:
            f.write(json.dumps(entry.to_dict(), default=str) + '\n')

    def read_audit(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        path = self._user_dir(user_id) / 'audit.jsonl'
        if not path.exists():
            return []
        with open(path) as f:
            entries = [json.loads(line) for line in f if line.strip()]
        return entries[-limit:] if limit else entries
