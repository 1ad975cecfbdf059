"""
Process-wide service wiring. STORE_BACKEND picks Redis (shared by API and worker) or the
in-memory store. Components are built on first use; set_services() swaps them (tests).
"""

import logging
import threading
from dataclasses import dataclass

from deskroute.config import STORE_BACKEND
from deskroute.services.agent_directory import MemoryAgentDirectory, RedisAgentDirectory
from deskroute.services.coordinator import AssignmentCoordinator
from deskroute.services.performance import PerformanceMetricsProvider
from deskroute.services.provider_guard import GuardedDirectory
from deskroute.services.rebalancer import Rebalancer
from deskroute.services.rule_admin import RuleAdmin
from deskroute.services.rules import RuleCache
from deskroute.services.sla import SLACalculator, SLAPolicyAdmin
from deskroute.services.sla_monitor import SLAMonitor
from deskroute.store.memory_store import MemoryStore
from deskroute.store.redis_store import RedisStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: object
    directory: object
    rule_cache: RuleCache
    rule_admin: RuleAdmin
    sla_admin: SLAPolicyAdmin
    coordinator: AssignmentCoordinator
    rebalancer: Rebalancer
    sla_monitor: SLAMonitor


def build_services(store=None, directory=None) -> Services:
    if store is None:
        store = RedisStore() if STORE_BACKEND == "redis" else MemoryStore()
    if directory is None:
        directory = RedisAgentDirectory() if STORE_BACKEND == "redis" else MemoryAgentDirectory()
    rule_cache = RuleCache(store.list_rules)
    sla = SLACalculator(store.list_sla_policies)
    coordinator = AssignmentCoordinator(
        store,
        GuardedDirectory(directory),
        rule_cache,
        sla,
        performance=PerformanceMetricsProvider(store),
    )
    logger.info("Services built (%s store).", type(store).__name__)
    return Services(
        store=store,
        directory=directory,
        rule_cache=rule_cache,
        rule_admin=RuleAdmin(store, rule_cache),
        sla_admin=SLAPolicyAdmin(store),
        coordinator=coordinator,
        rebalancer=Rebalancer(store, coordinator),
        sla_monitor=SLAMonitor(store, sla),
    )


_services: Services | None = None
_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _lock:
        if _services is None:
            _services = build_services()
        return _services


def set_services(services: Services | None) -> None:
    """Install prebuilt services (or None to rebuild lazily)."""
    global _services
    with _lock:
        _services = services
