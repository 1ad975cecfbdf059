"""
Unit tests for performance metrics, the provider guard, agent directory and notifications.
Run: pytest tests/test_providers.py -v
"""

import time
from datetime import timedelta

import pytest

from deskroute import activity
from deskroute.errors import ProviderUnavailable
from deskroute.models import Priority, TicketStatus
from deskroute.notifications import TICKET_ASSIGNED, _build_webhook_payload, notify
from deskroute.services.agent_directory import MemoryAgentDirectory
from deskroute.services.performance import PerformanceMetricsProvider
from deskroute.services.provider_guard import GuardedDirectory, call_with_timeout
from tests.factories import NOW, make_agent, make_ticket


class TestPerformanceMetrics:
    def test_rate_and_satisfaction(self, store):
        store.save_ticket(make_ticket("t1", assigned_agent_id="a1", status=TicketStatus.RESOLVED, satisfaction_rating=5))
        store.save_ticket(make_ticket("t2", assigned_agent_id="a1", status=TicketStatus.CLOSED, satisfaction_rating=3))
        store.save_ticket(make_ticket("t3", assigned_agent_id="a1"))
        store.save_ticket(make_ticket("t4", assigned_agent_id="a1", status=TicketStatus.RESOLVED))

        m = PerformanceMetricsProvider(store).metrics(["a1"], NOW)["a1"]

        assert m.assigned_count == 4
        assert m.resolved_count == 3
        assert m.resolution_rate == pytest.approx(0.75)
        assert m.satisfaction == pytest.approx(4.0)

    def test_defaults_without_history(self, store):
        m = PerformanceMetricsProvider(store).metrics(["new"], NOW)["new"]
        assert m.resolution_rate == pytest.approx(0.8)
        assert m.satisfaction == pytest.approx(4.0)

    def test_window_excludes_old_tickets(self, store):
        store.save_ticket(make_ticket("old", assigned_agent_id="a1", created_at=NOW - timedelta(days=45)))
        store.save_ticket(make_ticket("new", assigned_agent_id="a1", status=TicketStatus.RESOLVED))
        m = PerformanceMetricsProvider(store, window_days=30).metrics(["a1"], NOW)["a1"]
        assert m.assigned_count == 1
        assert m.resolution_rate == 1.0

    def test_offset_less_timestamps_read_as_utc(self, store):
        store.save_ticket(make_ticket("t1", assigned_agent_id="a1", status=TicketStatus.RESOLVED, satisfaction_rating=5))
        store.save_ticket(make_ticket("t2", assigned_agent_id="a2", created_at="2026-03-04T09:00:00"))

        metrics = PerformanceMetricsProvider(store).metrics(["a1", "a2"], NOW.replace(tzinfo=None))

        assert metrics["a1"].satisfaction == pytest.approx(5.0)
        assert metrics["a2"].assigned_count == 1


class TestProviderGuard:
    def test_timeout_raises_provider_unavailable(self):
        with pytest.raises(ProviderUnavailable) as exc:
            call_with_timeout(lambda: time.sleep(0.5), "slow thing", timeout=0.05)
        assert exc.value.component == "slow thing"

    def test_error_raises_provider_unavailable(self):
        def boom():
            raise ConnectionError("refused")

        with pytest.raises(ProviderUnavailable):
            call_with_timeout(boom, "directory")

    def test_returns_value(self):
        assert call_with_timeout(lambda: 42, "answer") == 42

    def test_guarded_directory_falls_back(self):
        class Flaky(MemoryAgentDirectory):
            down = False

            def list_agents(self):
                if self.down:
                    raise ConnectionError("directory down")
                return super().list_agents()

            def get_agent(self, agent_id):
                if self.down:
                    raise ConnectionError("directory down")
                return super().get_agent(agent_id)

        source = Flaky([make_agent("a1")])
        guarded = GuardedDirectory(source)
        assert [a.agent_id for a in guarded.snapshot().agents] == ["a1"]
        source.down = True
        view = guarded.snapshot()
        assert view.degraded is True
        assert [a.agent_id for a in view.agents] == ["a1"]
        assert guarded.get_agent("a1").agent_id == "a1"
        assert guarded.get_agent("zz") is None

    def test_cold_failure_gives_empty_degraded_view(self):
        class Down:
            def list_agents(self):
                raise ConnectionError("down")

        view = GuardedDirectory(Down()).snapshot()
        assert view.degraded is True
        assert view.agents == []


class TestAgentDirectory:
    def test_register_list_and_availability(self):
        directory = MemoryAgentDirectory()
        directory.register_agent(make_agent("b"))
        directory.register_agent(make_agent("a"))
        assert [a.agent_id for a in directory.list_agents()] == ["a", "b"]
        directory.set_availability("a", False)
        assert directory.get_agent("a").available is False


class TestNotifications:
    def test_notify_records_activity(self):
        notify("a1", TICKET_ASSIGNED, {"ticket_id": "T1", "priority": Priority.HIGH.value}, webhook_url="")
        [event] = activity.get_recent(event_type=TICKET_ASSIGNED)
        assert event["data"] == {"recipient": "a1", "ticket_id": "T1", "priority": "high"}

    def test_webhook_payload(self):
        payload = _build_webhook_payload("admins", "ticket_unassigned", {"ticket_id": "T9", "reason": "no eligible agent"})
        assert "T9" in payload["text"]
        assert "no eligible agent" in payload["blocks"][0]["text"]["text"]

    def test_activity_log_is_bounded(self):
        for i in range(activity.MAX_EVENTS + 10):
            activity.emit("tick", {"i": i})
        events = activity.get_recent(limit=500)
        assert len(events) == activity.MAX_EVENTS
        assert events[-1]["data"]["i"] == activity.MAX_EVENTS + 9
