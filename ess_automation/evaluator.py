"""Condition evaluation against one signal snapshot"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .conditions import ConditionResult, ConditionSet
from .models import SignalSnapshot


@dataclass
class EvaluationResult:
    per_condition: List[ConditionResult] = field(default_factory=list)
    all_met: bool = False
    incomplete: bool = False

    @property
    def unmet(self) -> List[ConditionResult]:
        return [r for r in self.per_condition if not r.met]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'all_met': self.all_met,
            'incomplete': self.incomplete,
            'conditions': [r.to_dict() for r in self.per_condition],
        }


def evaluate(condition_set: ConditionSet, snapshot: SignalSnapshot) -> EvaluationResult:
    """Evaluate every enabled condition; a set with none enabled never matches"""
    results = [condition.evaluate(snapshot) for condition in condition_set.enabled()]
    return EvaluationResult(
        per_condition=results,
        all_met=bool(results) and all(r.met for r in results),
        incomplete=any(r.incomplete for r in results),
    )
