"""
Time-bounded reads from external providers (agent directory, performance metrics).

Each read runs on a worker thread with a hard timeout. On timeout or error the caller
gets ProviderUnavailable and falls back to a neutral default; assignment never blocks
on a slow collaborator.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from deskroute.config import PROVIDER_TIMEOUT_SECONDS
from deskroute.errors import ProviderUnavailable
from deskroute.models import Agent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provider")


def call_with_timeout(fn: Callable[[], T], component: str, timeout: float = PROVIDER_TIMEOUT_SECONDS) -> T:
    """Run fn() with a hard timeout; raise ProviderUnavailable on timeout or error."""
    future = _executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout as e:
        future.cancel()
        raise ProviderUnavailable(component, e) from e
    except Exception as e:
        raise ProviderUnavailable(component, e) from e


@dataclass
class DirectoryView:
    """Agents as read for one decision. degraded=True means availability data is stale."""

    agents: list[Agent] = field(default_factory=list)
    degraded: bool = False


class GuardedDirectory:
    """Wraps an agent directory with a timeout and a last-known-good fallback."""

    def __init__(self, directory, timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.directory = directory
        self.timeout = timeout
        self._last_agents: Optional[list[Agent]] = None

    def snapshot(self) -> DirectoryView:
        try:
            agents = call_with_timeout(self.directory.list_agents, "agent directory", self.timeout)
        except ProviderUnavailable as e:
            logger.warning("Degraded mode: %s; using last known agent list (%d agents).",
                           e, len(self._last_agents or []))
            return DirectoryView(agents=list(self._last_agents or []), degraded=True)
        self._last_agents = list(agents)
        return DirectoryView(agents=list(agents), degraded=False)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        try:
            return call_with_timeout(lambda: self.directory.get_agent(agent_id), "agent directory", self.timeout)
        except ProviderUnavailable as e:
            logger.warning("Degraded mode: %s; resolving agent %s from last known list.", e, agent_id)
            for agent in self._last_agents or []:
                if agent.agent_id == agent_id:
                    return agent
            return None
