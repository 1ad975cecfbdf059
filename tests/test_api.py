"""
API tests against the FastAPI app in-process (in-memory store).
Run: pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from deskroute.main import app
from deskroute.models import Priority
from deskroute.services.rebalancer import LOCK_NAME
from tests.factories import make_agent, make_ticket


@pytest.fixture
def client(services):
    with TestClient(app) as c:
        yield c


def ticket_payload(ticket_id, **kw):
    return {"ticket": make_ticket(ticket_id, **kw).model_dump(mode="json")}


def register(client, agent_id, **kw):
    r = client.post("/agents", json=make_agent(agent_id, **kw).model_dump(mode="json"))
    assert r.status_code == 201


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


class TestTicketEvents:
    def test_ticket_created_assigns(self, client):
        register(client, "a1")
        r = client.post("/events/ticket-created", json=ticket_payload("T1", priority=Priority.LOW))
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "assigned"
        assert data["agent_id"] == "a1"
        assert data["decision"]["path"] == "scoring"

        ticket = client.get("/tickets/T1").json()
        assert ticket["assigned_agent_id"] == "a1"
        assert ticket["response_due"] is not None

    def test_ticket_created_without_agents_is_unassigned(self, client):
        r = client.post("/events/ticket-created", json=ticket_payload("T1"))
        assert r.status_code == 200
        assert r.json()["status"] == "unassigned"
        # The ticket exists regardless of the assignment outcome.
        assert client.get("/tickets/T1").status_code == 200
        events = client.get("/activity", params={"type": "ticket_unassigned"}).json()["events"]
        assert len(events) == 1

    def test_reassign_and_history(self, client):
        register(client, "a1")
        register(client, "a2")
        first = client.post("/events/ticket-created", json=ticket_payload("T1")).json()["agent_id"]
        r = client.post("/events/ticket-reassigned", json={"ticket_id": "T1", "reason": "shift ended"})
        assert r.status_code == 200
        assert r.json()["agent_id"] != first
        decisions = client.get("/tickets/T1/decisions").json()
        assert len(decisions) == 2
        assert decisions[1]["previous_agent_id"] == first
        assert len(client.get("/decisions").json()) == 2

    def test_manual_assignment(self, client):
        register(client, "a1")
        register(client, "a2")
        client.post("/events/ticket-created", json=ticket_payload("T1"))
        r = client.post("/tickets/T1/assign-manual", json={"agent_id": "a2", "reason": "escalation"})
        assert r.status_code == 200
        assert r.json()["decision"]["path"] == "manual"
        assert client.get("/tickets/T1").json()["assigned_agent_id"] == "a2"

    def test_offset_less_created_at_stored_as_utc(self, client):
        register(client, "a1")
        payload = {"ticket": {"ticket_id": "T1", "title": "VPN down", "created_at": "2026-03-04T09:00:00"}}
        assert client.post("/events/ticket-created", json=payload).json()["status"] == "assigned"
        ticket = client.get("/tickets/T1").json()
        assert ticket["created_at"] == "2026-03-04T09:00:00Z"
        assert client.post("/events/ticket-created", json=ticket_payload("T2")).json()["status"] == "assigned"

    def test_manual_assignment_unknown_agent_404(self, client):
        client.post("/events/ticket-created", json=ticket_payload("T1"))
        r = client.post("/tickets/T1/assign-manual", json={"agent_id": "ghost"})
        assert r.status_code == 404

    def test_assign_unknown_ticket_404(self, client):
        assert client.post("/tickets/missing/assign").status_code == 404
        assert client.get("/tickets/missing").status_code == 404
        assert client.get("/tickets/missing/decisions").status_code == 404

    def test_assign_twice_is_conflict(self, client):
        register(client, "a1")
        client.post("/events/ticket-created", json=ticket_payload("T1"))
        r = client.post("/tickets/T1/assign")
        assert r.status_code == 409
        assert r.json()["retryable"] is True


class TestRulesApi:
    rule = {
        "name": "security",
        "priority": 10,
        "conditions": [
            {"field": "priority", "operator": "equals", "value": "urgent"},
            {"field": "category", "operator": "equals", "value": "Security"},
        ],
        "action": {"kind": "force_assign", "target": "security-team-lead"},
    }

    def test_rule_crud_and_effect(self, client):
        register(client, "security-team-lead")
        register(client, "a1")
        r = client.post("/rules", json=self.rule)
        assert r.status_code == 201
        rule_id = r.json()["rule_id"]
        assert client.get(f"/rules/{rule_id}").json()["name"] == "security"
        assert len(client.get("/rules").json()) == 1

        r = client.post("/events/ticket-created",
                        json=ticket_payload("T1", priority=Priority.URGENT, category="Security"))
        assert r.json()["agent_id"] == "security-team-lead"
        assert r.json()["decision"]["rule_id"] == rule_id
        assert client.get("/rules/stats").json()["rule_decisions"] == 1

        updated = dict(self.rule, name="security-v2", enabled=False)
        assert client.put(f"/rules/{rule_id}", json=updated).json()["enabled"] is False
        assert client.delete(f"/rules/{rule_id}").status_code == 200
        assert client.get(f"/rules/{rule_id}").status_code == 404

    def test_invalid_rule_rejected_422(self, client):
        bad = dict(self.rule, conditions=[{"field": "category", "operator": "at_least", "value": "x"}])
        r = client.post("/rules", json=bad)
        assert r.status_code == 422
        assert client.get("/rules").json() == []

    def test_unknown_action_kind_rejected(self, client):
        r = client.post("/rules", json=dict(self.rule, action={"kind": "teleport"}))
        assert r.status_code == 422


class TestSlaApi:
    def test_policy_crud(self, client):
        policy = {"priority": "high", "category": "Billing", "response_hours": 1, "resolution_hours": 6}
        assert client.put("/sla-policies", json=policy).status_code == 200
        assert [p["category"] for p in client.get("/sla-policies").json()] == ["Billing"]
        assert client.delete("/sla-policies/high/Billing").status_code == 200
        assert client.delete("/sla-policies/high/Billing").status_code == 404

    def test_invalid_policy_422(self, client):
        policy = {"priority": "low", "category": "*", "response_hours": 0, "resolution_hours": 4}
        assert client.put("/sla-policies", json=policy).status_code == 422

    def test_sla_check(self, client):
        register(client, "a1")
        client.post("/events/ticket-created", json=ticket_payload("T1"))
        r = client.post("/sla/check")
        assert r.status_code == 200
        assert [s["ticket_id"] for s in r.json()] == ["T1"]


class TestWorkloadApi:
    def test_workload_and_rebalance(self, client, services):
        register(client, "A", skills=["network"])
        register(client, "B", skills=["network"])
        for i in range(3):
            services.store.save_ticket(make_ticket(f"A-{i}", priority=Priority.URGENT, category="Network",
                                                   assigned_agent_id="A"))
        assert client.get("/workload").json()["loads"] == {"A": 9.0, "B": 0.0}

        dry = client.post("/rebalance", json={"dry_run": True}).json()
        assert dry["dry_run"] is True and dry["moves"]
        assert client.get("/workload").json()["loads"]["A"] == 9.0

        report = client.post("/rebalance").json()
        assert report["moves"][0]["executed"] is True
        assert client.get("/workload").json()["loads"]["A"] < 9.0

    def test_rebalance_in_progress_409(self, client, services):
        services.store.acquire_lock(LOCK_NAME, 60)
        assert client.post("/rebalance").status_code == 409

    def test_agent_with_unknown_timezone_rejected(self, client):
        agent = make_agent("a1").model_dump(mode="json")
        agent["office_hours"] = {"start": "09:00", "end": "17:00", "days": ["mon"], "timezone": "Mars/Olympus"}
        assert client.post("/agents", json=agent).status_code == 422
        assert client.get("/agents").json() == []

    def test_agents_listing(self, client):
        register(client, "b")
        register(client, "a")
        assert [a["agent_id"] for a in client.get("/agents").json()] == ["a", "b"]
