"""Priority and cooldown resolution across a user's rules"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .evaluator import EvaluationResult, evaluate
from .models import CooldownRecord, SignalSnapshot
from .rules import Rule
from .state_machine import cooldown_remaining

logger = logging.getLogger(__name__)


class RuleOutcome(str, Enum):
    TRIGGERED = 'triggered'
    NOT_MET = 'not_met'
    COOLDOWN = 'cooldown'
    NOT_EVALUATED = 'lower_priority_not_evaluated'


@dataclass
class RuleDiagnostic:
    rule_id: str
    name: str
    priority: int
    outcome: RuleOutcome
    cooldown_remaining_seconds: Optional[int] = None
    evaluation: Optional[EvaluationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'rule_id': self.rule_id, 'name': self.name, 'priority': self.priority,
                'outcome': self.outcome.value}
        if self.cooldown_remaining_seconds is not None:
            data['cooldown_remaining_seconds'] = self.cooldown_remaining_seconds
        if self.evaluation is not None:
            data.update(self.evaluation.to_dict())
        return data


@dataclass
class MatchResult:
    rule: Rule
    evaluation: EvaluationResult


@dataclass
class Selection:
    match: Optional[MatchResult] = None
    diagnostics: List[RuleDiagnostic] = field(default_factory=list)

    @property
    def incomplete(self) -> bool:
        return any(d.evaluation.incomplete for d in self.diagnostics if d.evaluation)


def select_match(rules: List[Rule], snapshot: SignalSnapshot,
                 cooldowns: Dict[str, CooldownRecord], now: datetime) -> Selection:
    """First enabled rule (ascending priority) that is off cooldown and fully met"""
    ordered = sorted((r for r in rules if r.enabled), key=lambda r: r.priority)
    selection = Selection()

    for index, rule in enumerate(ordered):
        remaining = cooldown_remaining(cooldowns.get(rule.id), now)
        if remaining is not None:
            logger.debug(f"selector.skip rule={rule.id} reason=cooldown remaining={int(remaining.total_seconds())}s")
            selection.diagnostics.append(RuleDiagnostic(
                rule.id, rule.name, rule.priority, RuleOutcome.COOLDOWN,
                cooldown_remaining_seconds=int(remaining.total_seconds())))
            continue

        result = evaluate(rule.conditions, snapshot)
        if not result.all_met:
            selection.diagnostics.append(RuleDiagnostic(rule.id, rule.name, rule.priority,
                                                        RuleOutcome.NOT_MET, evaluation=result))
            continue

        selection.match = MatchResult(rule, result)
        selection.diagnostics.append(RuleDiagnostic(rule.id, rule.name, rule.priority,
                                                    RuleOutcome.TRIGGERED, evaluation=result))
        for lower in ordered[index + 1:]:
            selection.diagnostics.append(RuleDiagnostic(lower.id, lower.name, lower.priority,
                                                        RuleOutcome.NOT_EVALUATED))
        break

    return selection
