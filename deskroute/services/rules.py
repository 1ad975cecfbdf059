"""
Rule engine: ordered condition -> action rules evaluated before scoring.

Enabled rules are evaluated by (priority, created_at) ascending. Every condition of a rule
must match; the first fully-matching rule short-circuits with its action. No match yields
Defer. A malformed rule is skipped with a warning so one bad rule never blocks assignment.
"""

import logging
import threading
import time as _time
from datetime import datetime, time
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from deskroute.config import BUSINESS_TIMEZONE, RULE_CACHE_TTL_SECONDS
from deskroute.errors import ConfigurationError
from deskroute.models import (
    WEEKDAYS,
    AssignmentRule,
    ConditionField,
    Defer,
    Priority,
    RuleCondition,
    RuleOutcome,
    Ticket,
    utcnow,
)

logger = logging.getLogger(__name__)

Predicate = Callable[[Ticket, datetime], bool]

# Operators accepted per condition field.
FIELD_OPERATORS: dict[ConditionField, set[str]] = {
    ConditionField.PRIORITY: {"equals", "not_equals", "in", "not_in", "at_least", "at_most"},
    ConditionField.CATEGORY: {"equals", "not_equals", "in", "not_in"},
    ConditionField.SUBCATEGORY: {"equals", "not_equals", "in", "not_in"},
    ConditionField.KEYWORD: {"contains_any", "contains_all"},
    ConditionField.TIME_OF_DAY: {"between"},
    ConditionField.DAY_OF_WEEK: {"equals", "in", "not_in"},
}


def _as_list(value: Any, what: str) -> list:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return [value]
    if isinstance(value, (list, tuple, set)) and value:
        return list(value)
    raise ConfigurationError(f"{what}: expected a non-empty value or list, got {value!r}")


def _norm(value: Any) -> str:
    return str(value).strip().lower()


def _parse_time(value: Any) -> time:
    try:
        hours, minutes = str(value).strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError:
        raise ConfigurationError(f"time_of_day: invalid HH:MM value {value!r}") from None


def _parse_priority(value: Any) -> Priority:
    try:
        return Priority(_norm(value))
    except ValueError:
        raise ConfigurationError(f"priority: unknown value {value!r}") from None


def _membership(getter: Callable[[Ticket], Optional[str]], operator: str, values: list[str]) -> Predicate:
    wanted = {_norm(v) for v in values}

    def contains(ticket: Ticket) -> bool:
        actual = getter(ticket)
        return actual is not None and _norm(actual) in wanted

    if operator in ("equals", "in"):
        return lambda ticket, now: contains(ticket)
    return lambda ticket, now: not contains(ticket)


def compile_condition(condition: RuleCondition, tz: ZoneInfo) -> Predicate:
    """Turn a condition into a predicate, raising ConfigurationError if it is malformed."""
    try:
        field = ConditionField(condition.field)
    except ValueError:
        raise ConfigurationError(f"unknown condition field {condition.field!r}") from None
    operator = condition.operator
    if operator not in FIELD_OPERATORS[field]:
        raise ConfigurationError(f"operator {operator!r} is not valid for field {field.value!r}")
    value = condition.value
    if operator == "equals" and (isinstance(value, bool) or not isinstance(value, (str, int))):
        raise ConfigurationError(f"{field.value}: 'equals' needs a single value, got {value!r}")

    if field == ConditionField.PRIORITY:
        if operator in ("at_least", "at_most"):
            bound = _parse_priority(value).rank
            if operator == "at_least":
                return lambda ticket, now: ticket.priority.rank >= bound
            return lambda ticket, now: ticket.priority.rank <= bound
        values = [_parse_priority(v).value for v in _as_list(value, "priority")]
        return _membership(lambda t: t.priority.value, operator, values)

    if field == ConditionField.CATEGORY:
        return _membership(lambda t: t.category, operator, _as_list(value, "category"))

    if field == ConditionField.SUBCATEGORY:
        return _membership(lambda t: t.subcategory, operator, _as_list(value, "subcategory"))

    if field == ConditionField.KEYWORD:
        keywords = [_norm(k) for k in _as_list(value, "keyword") if _norm(k)]
        if not keywords:
            raise ConfigurationError("keyword: no non-blank keywords")
        match = any if operator == "contains_any" else all

        def has_keywords(ticket: Ticket, now: datetime) -> bool:
            text = f"{ticket.title} {ticket.description}".lower()
            return match(k in text for k in keywords)

        return has_keywords

    if field == ConditionField.TIME_OF_DAY:
        window = _as_list(value, "time_of_day")
        if len(window) != 2:
            raise ConfigurationError(f"time_of_day: 'between' needs [start, end], got {value!r}")
        start, end = _parse_time(window[0]), _parse_time(window[1])

        def in_window(ticket: Ticket, now: datetime) -> bool:
            current = now.astimezone(tz).time().replace(second=0, microsecond=0)
            if start <= end:
                return start <= current <= end
            return current >= start or current <= end

        return in_window

    days = [_norm(d)[:3] for d in _as_list(value, "day_of_week")]
    unknown = [d for d in days if d not in WEEKDAYS]
    if unknown:
        raise ConfigurationError(f"day_of_week: unknown day(s) {unknown}")
    wanted_days = set(days)
    if operator == "not_in":
        return lambda ticket, now: WEEKDAYS[now.astimezone(tz).weekday()] not in wanted_days
    return lambda ticket, now: WEEKDAYS[now.astimezone(tz).weekday()] in wanted_days


def compile_rule(rule: AssignmentRule, tz: ZoneInfo) -> list[Predicate]:
    return [compile_condition(c, tz) for c in rule.conditions]


def ordered_rules(rules: list[AssignmentRule]) -> list[AssignmentRule]:
    """Enabled rules in evaluation order: priority ascending, then oldest first."""
    return sorted((r for r in rules if r.enabled), key=lambda r: (r.priority, r.created_at, r.rule_id))


class RuleEngine:
    """Evaluates tickets against the active rule set."""

    def __init__(self, tz: str = BUSINESS_TIMEZONE):
        self.tz = ZoneInfo(tz)

    def evaluate(self, ticket: Ticket, rules: list[AssignmentRule], now: Optional[datetime] = None) -> RuleOutcome:
        now = now or utcnow()
        for rule in ordered_rules(rules):
            try:
                predicates = compile_rule(rule, self.tz)
            except ConfigurationError as e:
                logger.warning("Skipping malformed rule %s (%s): %s", rule.rule_id, rule.name, e)
                continue
            if all(p(ticket, now) for p in predicates):
                logger.info("Ticket %s matched rule %s (%s) -> %s.",
                            ticket.ticket_id, rule.rule_id, rule.name, rule.action.kind)
                return RuleOutcome(action=rule.action, rule_id=rule.rule_id, rule_name=rule.name)
        return RuleOutcome(action=Defer())


class RuleCache:
    """
    Holds the active rule list for a short TTL. The rule configuration API calls
    invalidate() on every write, so edits take effect on the next decision.
    """

    def __init__(self, loader: Callable[[], list[AssignmentRule]], ttl_seconds: float = RULE_CACHE_TTL_SECONDS):
        self.loader = loader
        self.ttl = ttl_seconds
        self._lock = threading.Lock()
        self._rules: Optional[list[AssignmentRule]] = None
        self._loaded_at = 0.0

    def get(self) -> list[AssignmentRule]:
        with self._lock:
            now = _time.monotonic()
            if self._rules is None or now - self._loaded_at >= self.ttl:
                self._rules = ordered_rules(self.loader())
                self._loaded_at = now
            return list(self._rules)

    def invalidate(self) -> None:
        with self._lock:
            self._rules = None
        logger.debug("Rule cache invalidated.")
