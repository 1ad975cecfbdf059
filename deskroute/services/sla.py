"""
SLA deadline computation.

Policy lookup order for a ticket (priority, category):
  1. exact (priority, category) row
  2. (priority, "*") row
  3. built-in default by priority: urgent 1h/4h, high 2h/8h, medium 4h/24h, low 8h/48h

Budgets are added as calendar time unless SLA_BUSINESS_HOURS_ONLY is set, in which case
only time inside the business calendar (default Mon-Fri 09:00-18:00) counts.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from deskroute.config import (
    BUSINESS_DAYS,
    BUSINESS_HOURS_END,
    BUSINESS_HOURS_START,
    BUSINESS_TIMEZONE,
    DEFAULT_SLA_HOURS,
    SLA_BUSINESS_HOURS_ONLY,
    SLA_WARNING_THRESHOLD,
)
from deskroute.errors import ConfigurationError
from deskroute.models import WEEKDAYS, WILDCARD_CATEGORY, Priority, SLAPolicy, as_utc

logger = logging.getLogger(__name__)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def default_policy(priority: Priority) -> SLAPolicy:
    response, resolution = DEFAULT_SLA_HOURS[Priority(priority).value]
    return SLAPolicy(
        priority=priority,
        category=WILDCARD_CATEGORY,
        response_hours=response,
        resolution_hours=resolution,
        warning_threshold=SLA_WARNING_THRESHOLD,
    )


def validate_policy(policy: SLAPolicy) -> None:
    """Reject policies that would produce zero or negative deadlines."""
    if policy.response_hours <= 0 or policy.resolution_hours <= 0:
        raise ConfigurationError(
            f"SLA policy {policy.key}: budgets must be positive "
            f"(response={policy.response_hours}, resolution={policy.resolution_hours})"
        )
    if policy.resolution_hours < policy.response_hours:
        raise ConfigurationError(f"SLA policy {policy.key}: resolution budget shorter than response budget")
    if not policy.category.strip():
        raise ConfigurationError("SLA policy category must be a name or '*'")


class BusinessCalendar:
    """Working-hours window repeated on working days, in one timezone."""

    def __init__(
        self,
        start: time = _parse_hhmm(BUSINESS_HOURS_START),
        end: time = _parse_hhmm(BUSINESS_HOURS_END),
        days: Optional[list[str]] = None,
        tz: str = BUSINESS_TIMEZONE,
    ):
        days = [d.strip().lower()[:3] for d in (days if days is not None else BUSINESS_DAYS)]
        if start >= end:
            raise ConfigurationError("business hours must start before they end")
        if not any(d in WEEKDAYS for d in days):
            raise ConfigurationError("business calendar has no working days")
        self.start = start
        self.end = end
        self.days = set(days)
        self.tz = ZoneInfo(tz)

    def add(self, start: datetime, hours: float) -> datetime:
        """Return the instant `hours` of business time after `start`."""
        remaining = timedelta(hours=hours)
        cursor = as_utc(start).astimezone(self.tz)
        while True:
            day = cursor.date()
            if WEEKDAYS[day.weekday()] in self.days:
                opens = datetime.combine(day, self.start, tzinfo=self.tz)
                closes = datetime.combine(day, self.end, tzinfo=self.tz)
                if cursor < opens:
                    cursor = opens
                if cursor < closes:
                    available = closes - cursor
                    if remaining <= available:
                        return (cursor + remaining).astimezone(timezone.utc)
                    remaining -= available
            cursor = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=self.tz)


class SLACalculator:
    """Maps (priority, category, created_at) to (response_due, resolution_due)."""

    def __init__(
        self,
        policy_source: Callable[[], list[SLAPolicy]],
        business_hours_only: bool = SLA_BUSINESS_HOURS_ONLY,
        calendar: Optional[BusinessCalendar] = None,
    ):
        self.policy_source = policy_source
        self.business_hours_only = business_hours_only
        self.calendar = calendar or (BusinessCalendar() if business_hours_only else None)

    def resolve_policy(self, priority: Priority, category: Optional[str]) -> SLAPolicy:
        priority = Priority(priority)
        policies = {p.key: p for p in self.policy_source()}
        for key in (f"{priority.value}:{category}", f"{priority.value}:{WILDCARD_CATEGORY}"):
            policy = policies.get(key)
            if policy is None:
                continue
            try:
                validate_policy(policy)
            except ConfigurationError as e:
                logger.warning("Ignoring invalid SLA policy, using next fallback: %s", e)
                continue
            return policy
        return default_policy(priority)

    def compute_deadlines(
        self, priority: Priority, category: Optional[str], created_at: datetime
    ) -> tuple[datetime, datetime]:
        policy = self.resolve_policy(priority, category)
        created_at = as_utc(created_at)
        if self.business_hours_only and self.calendar is not None:
            return (
                self.calendar.add(created_at, policy.response_hours),
                self.calendar.add(created_at, policy.resolution_hours),
            )
        return (
            created_at + timedelta(hours=policy.response_hours),
            created_at + timedelta(hours=policy.resolution_hours),
        )


class SLAPolicyAdmin:
    """CRUD over SLA policy rows with write-time validation."""

    def __init__(self, store):
        self.store = store

    def list_policies(self) -> list[SLAPolicy]:
        return sorted(self.store.list_sla_policies(), key=lambda p: (p.priority.rank, p.category))

    def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        validate_policy(policy)
        self.store.save_sla_policy(policy)
        logger.info("SLA policy %s saved (%.1fh / %.1fh).", policy.key, policy.response_hours, policy.resolution_hours)
        return policy

    def delete(self, priority: Priority, category: str) -> bool:
        return self.store.delete_sla_policy(priority, category)
