"""Rule configuration API: validated CRUD over assignment rules."""

import logging
from typing import Optional
from zoneinfo import ZoneInfo

from deskroute.config import BUSINESS_TIMEZONE
from deskroute.errors import ConfigurationError
from deskroute.models import (
    AssignmentRule,
    AssignmentRuleInput,
    DecisionPath,
    ForceAssign,
    RestrictPool,
    utcnow,
)
from deskroute.services.rules import RuleCache, compile_rule

logger = logging.getLogger(__name__)


class RuleAdmin:
    """
    Create/update validate synchronously and raise ConfigurationError on:
    unknown fields, operator/field mismatches, bad values, a priority already used by
    another enabled rule, an empty ForceAssign target or an empty RestrictPool filter.
    Every write invalidates the rule cache.
    """

    def __init__(self, store, cache: Optional[RuleCache] = None, tz: str = BUSINESS_TIMEZONE):
        self.store = store
        self.cache = cache
        self.tz = ZoneInfo(tz)

    def list_rules(self) -> list[AssignmentRule]:
        return sorted(self.store.list_rules(), key=lambda r: (r.priority, r.created_at, r.rule_id))

    def get_rule(self, rule_id: str) -> Optional[AssignmentRule]:
        return self.store.get_rule(rule_id)

    def validate(self, rule: AssignmentRule) -> None:
        compile_rule(rule, self.tz)
        action = rule.action
        if isinstance(action, ForceAssign) and not action.target.strip():
            raise ConfigurationError("force_assign needs a non-empty target")
        if isinstance(action, RestrictPool) and action.filter.is_empty():
            raise ConfigurationError("restrict_pool needs at least one filter criterion")
        if rule.enabled:
            for other in self.store.list_rules():
                if other.enabled and other.rule_id != rule.rule_id and other.priority == rule.priority:
                    raise ConfigurationError(
                        f"priority {rule.priority} is already used by enabled rule {other.rule_id} ({other.name})"
                    )

    def create(self, payload: AssignmentRuleInput) -> AssignmentRule:
        rule = AssignmentRule(**payload.model_dump())
        self.validate(rule)
        self.store.save_rule(rule)
        self._invalidate()
        logger.info("Rule %s (%s) created at priority %d.", rule.rule_id, rule.name, rule.priority)
        return rule

    def update(self, rule_id: str, payload: AssignmentRuleInput) -> Optional[AssignmentRule]:
        existing = self.store.get_rule(rule_id)
        if existing is None:
            return None
        rule = AssignmentRule(
            **payload.model_dump(),
            rule_id=rule_id,
            created_at=existing.created_at,
            updated_at=utcnow(),
        )
        self.validate(rule)
        self.store.save_rule(rule)
        self._invalidate()
        logger.info("Rule %s (%s) updated.", rule.rule_id, rule.name)
        return rule

    def set_enabled(self, rule_id: str, enabled: bool) -> Optional[AssignmentRule]:
        existing = self.store.get_rule(rule_id)
        if existing is None:
            return None
        rule = existing.model_copy(update={"enabled": enabled, "updated_at": utcnow()})
        self.validate(rule)
        self.store.save_rule(rule)
        self._invalidate()
        return rule

    def delete(self, rule_id: str) -> bool:
        deleted = self.store.delete_rule(rule_id)
        if deleted:
            self._invalidate()
            logger.info("Rule %s deleted.", rule_id)
        return deleted

    def stats(self) -> dict:
        rules = self.store.list_rules()
        rule_decisions: dict[str, int] = {}
        for decision in self.store.list_decisions(limit=10_000):
            if decision.path == DecisionPath.RULE and decision.rule_id:
                rule_decisions[decision.rule_id] = rule_decisions.get(decision.rule_id, 0) + 1
        return {
            "total": len(rules),
            "enabled": sum(1 for r in rules if r.enabled),
            "rule_decisions": sum(rule_decisions.values()),
            "by_rule": rule_decisions,
        }

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()
