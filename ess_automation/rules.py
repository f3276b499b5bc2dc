"""User-defined automation rules"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .conditions import PRICE_KINDS, TELEMETRY_KINDS, WEATHER_KINDS, ConditionSet
from .errors import ConfigurationError
from .models import Action, pick

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 5


@dataclass(frozen=True)
class Rule:
    """A prioritized set of conditions with the action to take when all are met"""
    id: str
    name: str
    action: Action
    enabled: bool = True
    priority: int = 100
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES
    conditions: ConditionSet = field(default_factory=ConditionSet)

    def uses(self, kinds: Iterable[str]) -> bool:
        wanted = set(kinds)
        return any(kind in wanted for kind in self.conditions.enabled_kinds())

    @property
    def needs_weather(self) -> bool:
        return self.uses(WEATHER_KINDS)

    @property
    def needs_telemetry(self) -> bool:
        return self.uses(TELEMETRY_KINDS)

    @property
    def needs_prices(self) -> bool:
        return self.uses(PRICE_KINDS)

    @property
    def needs_forecast_prices(self) -> bool:
        return self.uses({'price_forecast'})

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_id: Optional[str] = None,
                  defaults: Optional[Dict[str, Any]] = None) -> 'Rule':
        defaults = defaults or {}
        rule_id = str(pick(data, 'id', default=rule_id) or '')
        if not rule_id:
            raise ConfigurationError("Rule is missing an id")
        action_data = dict(data.get('action') or {})
        if 'duration_minutes' not in action_data and 'durationMinutes' not in action_data:
            action_data['duration_minutes'] = defaults.get('duration_minutes', 30)
        try:
            action = Action.from_dict(action_data)
        except ValueError as e:
            raise ConfigurationError(f"Rule {rule_id}: invalid action ({e})")
        cooldown = pick(data, 'cooldown_minutes', 'cooldownMinutes',
                        default=defaults.get('cooldown_minutes', DEFAULT_COOLDOWN_MINUTES))
        return cls(
            id=rule_id,
            name=str(data.get('name') or rule_id),
            action=action,
            enabled=bool(data.get('enabled', True)),
            priority=int(data.get('priority', 100)),
            cooldown_minutes=int(cooldown),
            conditions=ConditionSet.from_dict(data.get('conditions')),
        )


def parse_rules(data: Any, defaults: Optional[Dict[str, Any]] = None) -> List[Rule]:
    """Load rules from a list of documents or an id -> document mapping"""
    if not data:
        return []
    if isinstance(data, dict):
        items = [(str(rule_id), doc) for rule_id, doc in data.items()]
    else:
        items = [(None, doc) for doc in data]
    rules = []
    for rule_id, doc in items:
        try:
            rules.append(Rule.from_dict(doc, rule_id=rule_id, defaults=defaults))
        except ConfigurationError as e:
            name = rule_id or (doc.get('id') if isinstance(doc, dict) else None)
            logger.warning(f"Skipping rule {name or '<unnamed>'}: {e}")
    logger.debug(f"rules.parse count={len(rules)} enabled={sum(1 for r in rules if r.enabled)}")
    return rules
