# trigger.py
from __future__ import annotations

from typing import Iterable, Optional

from .model import Event, TriggerRule


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    if rule.event_kind is not event.kind:
        return False
    if rule.branch_patterns is None:
        return True
    # exact string match, no glob semantics
    return event.target_branch in rule.branch_patterns


def matching_rule(event: Event, rules: Iterable[TriggerRule]) -> Optional[TriggerRule]:
    for rule in rules:
        if rule_matches(rule, event):
            return rule
    return None


def matches(event: Event, rules: Iterable[TriggerRule]) -> bool:
    """
    True iff some rule fires for this event. Fails closed: no rules, or no
    matching rule, means "do not run".
    """
    return matching_rule(event, rules) is not None
