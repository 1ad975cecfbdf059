"""
Unit tests for multi-factor candidate scoring.
Run: pytest tests/test_scoring.py -v
"""

from datetime import datetime, time, timezone

import pytest
from pydantic import ValidationError

from deskroute.config import ScoringWeights, load_scoring_weights
from deskroute.models import AgentPerformance, OfficeHours, Priority
from deskroute.services.scoring import ScoringEngine, ScoringSnapshot, availability_score
from tests.factories import NOW, make_agent, make_ticket


def perf(agent_id, rate, satisfaction):
    return AgentPerformance(agent_id=agent_id, resolution_rate=rate, satisfaction=satisfaction)


class TestScoringEngine:
    engine = ScoringEngine()

    def test_least_loaded_ranked_first(self):
        ticket = make_ticket("T1", priority=Priority.URGENT, category="Network Outage")
        agents = [make_agent("a1"), make_agent("a2"), make_agent("a3")]
        snapshot = ScoringSnapshot(loads={"a1": 1.0, "a2": 4.0, "a3": 0.5}, now=NOW)
        ranked = self.engine.rank(ticket, agents, snapshot)
        assert [s.agent_id for s in ranked] == ["a3", "a1", "a2"]

    def test_components_and_weighted_total(self):
        ticket = make_ticket("T1", category="Billing", requester_id="cust-1")
        agent = make_agent("a1", skills=["billing"])
        snapshot = ScoringSnapshot(loads={"a1": 5.0}, now=NOW, history_agents={"a1"})
        [score] = self.engine.rank(ticket, [agent], snapshot)
        assert score.workload == pytest.approx(0.5)
        assert score.performance == pytest.approx(0.5)
        assert score.availability == 1.0
        assert score.skill == 1.0
        assert score.history == 1.0
        expected = 0.25 * 0.5 + 0.25 * 0.5 + 0.20 * 1.0 + 0.15 * 1.0 + 0.15 * 1.0
        assert score.total == pytest.approx(expected)

    def test_skill_baseline_without_match(self):
        ticket = make_ticket("T1", category="Billing")
        [score] = self.engine.rank(ticket, [make_agent("a1", skills=["network"])],
                                   ScoringSnapshot(loads={}, now=NOW))
        assert score.skill == pytest.approx(0.3)

    def test_subcategory_counts_as_skill_match(self):
        ticket = make_ticket("T1", category="Network", subcategory="VPN")
        [score] = self.engine.rank(ticket, [make_agent("a1", skills=["vpn"])], ScoringSnapshot(loads={}, now=NOW))
        assert score.skill == 1.0

    def test_language_bonus(self):
        ticket = make_ticket("T1", language="de")
        agents = [make_agent("a1", languages=["en"]), make_agent("a2", languages=["en", "de"])]
        ranked = self.engine.rank(ticket, agents, ScoringSnapshot(loads={}, now=NOW))
        assert ranked[0].agent_id == "a2"
        assert ranked[0].language_bonus == pytest.approx(0.05)
        assert ranked[0].total - ranked[1].total == pytest.approx(0.05)

    def test_performance_normalized_over_team(self):
        agents = [make_agent("a1"), make_agent("a2")]
        metrics = {"a1": perf("a1", 0.9, 4.8), "a2": perf("a2", 0.6, 3.0)}
        ranked = self.engine.rank(make_ticket("T1"), agents, ScoringSnapshot(loads={}, now=NOW, metrics=metrics))
        by_id = {s.agent_id: s for s in ranked}
        assert by_id["a1"].performance == 1.0
        assert by_id["a2"].performance == 0.0

    def test_single_candidate_uses_team_performance_range(self):
        metrics = {"a1": perf("a1", 0.9, 4.8), "a2": perf("a2", 0.6, 3.0), "a3": perf("a3", 0.75, 3.9)}
        snapshot = ScoringSnapshot(loads={}, now=NOW, metrics=metrics)
        [best] = self.engine.rank(make_ticket("T1"), [make_agent("a1")], snapshot)
        [middle] = self.engine.rank(make_ticket("T1"), [make_agent("a3")], snapshot)
        assert best.performance == pytest.approx(1.0)
        assert middle.performance == pytest.approx(0.5)

    def test_degenerate_or_missing_performance_is_neutral(self):
        agents = [make_agent("a1"), make_agent("a2")]
        metrics = {"a1": perf("a1", 0.8, 4.0), "a2": perf("a2", 0.8, 4.0)}
        for m in (metrics, None):
            ranked = self.engine.rank(make_ticket("T1"), agents, ScoringSnapshot(loads={}, now=NOW, metrics=m))
            assert all(s.performance == 0.5 for s in ranked)

    def test_excludes_unavailable_and_full_agents(self):
        agents = [
            make_agent("away", available=False),
            make_agent("full", capacity=4),
            make_agent("ok"),
        ]
        snapshot = ScoringSnapshot(loads={"full": 4.0, "ok": 9.5}, now=NOW)
        ranked = self.engine.rank(make_ticket("T1"), agents, snapshot)
        assert [s.agent_id for s in ranked] == ["ok"]

    def test_all_at_capacity_ranks_nobody(self):
        agents = [make_agent("a1"), make_agent("a2")]
        snapshot = ScoringSnapshot(loads={"a1": 10.0, "a2": 12.0}, now=NOW)
        assert self.engine.rank(make_ticket("T1"), agents, snapshot) == []

    def test_tie_broken_by_agent_id(self):
        agents = [make_agent("b"), make_agent("a"), make_agent("c")]
        ranked = self.engine.rank(make_ticket("T1"), agents, ScoringSnapshot(loads={}, now=NOW))
        assert [s.agent_id for s in ranked] == ["a", "b", "c"]

    def test_rank_is_deterministic(self):
        agents = [make_agent(f"a{i}", skills=["general"] if i % 2 else []) for i in range(6)]
        loads = {f"a{i}": float(i % 3) for i in range(6)}
        metrics = {f"a{i}": perf(f"a{i}", 0.5 + i / 20, 3.0 + i / 5) for i in range(6)}
        snapshot = ScoringSnapshot(loads=loads, now=NOW, metrics=metrics)
        first = self.engine.rank(make_ticket("T1"), agents, snapshot)
        second = self.engine.rank(make_ticket("T1"), list(reversed(agents)), snapshot)
        assert first == second

    def test_degraded_directory_scores_neutral_availability(self):
        agents = [make_agent("a1", available=False)]
        snapshot = ScoringSnapshot(loads={}, now=NOW, directory_degraded=True)
        [score] = self.engine.rank(make_ticket("T1"), agents, snapshot)
        assert score.availability == 0.5


class TestAvailability:
    def test_outside_office_hours_gets_partial_credit(self):
        hours = OfficeHours(start=time(9), end=time(17), days=["mon", "tue", "wed", "thu", "fri"])
        agent = make_agent("a1", office_hours=hours)
        evening = datetime(2026, 3, 4, 20, 0, tzinfo=timezone.utc)
        assert availability_score(agent, NOW) == 1.0
        assert availability_score(agent, evening) == pytest.approx(0.5)

    def test_overnight_shift(self):
        hours = OfficeHours(start=time(22), end=time(6), days=["wed"])
        agent = make_agent("night", office_hours=hours)
        assert availability_score(agent, datetime(2026, 3, 4, 23, 0, tzinfo=timezone.utc)) == 1.0
        # Thursday 03:00 belongs to Wednesday's shift.
        assert availability_score(agent, datetime(2026, 3, 5, 3, 0, tzinfo=timezone.utc)) == 1.0
        assert availability_score(agent, datetime(2026, 3, 6, 3, 0, tzinfo=timezone.utc)) == pytest.approx(0.5)

    def test_unusable_office_hours_score_neutral(self):
        hours = OfficeHours.model_construct(start=time(9), end=time(17), days=["mon"], timezone="Mars/Olympus")
        agent = make_agent("a1", office_hours=hours)
        assert availability_score(agent, NOW) == pytest.approx(0.5)


class TestScoringWeights:
    def test_defaults_sum_to_one(self):
        assert sum(ScoringWeights().as_vector()) == pytest.approx(1.0)

    def test_rejects_bad_total(self):
        with pytest.raises(ValueError):
            ScoringWeights(workload=0.9)

    def test_loads_from_json(self):
        weights = load_scoring_weights(
            '{"workload": 0.4, "performance": 0.1, "availability": 0.2, "skill": 0.15, "history": 0.15}'
        )
        assert weights.workload == 0.4
        assert load_scoring_weights("") == ScoringWeights()


class TestOfficeHoursValidation:
    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            OfficeHours(timezone="Mars/Olympus")

    def test_unknown_day_rejected(self):
        with pytest.raises(ValidationError):
            OfficeHours(days=["mon", "funday"])

    def test_day_names_normalized(self):
        assert OfficeHours(days=["Monday", " TUE "]).days == ["mon", "tue"]
