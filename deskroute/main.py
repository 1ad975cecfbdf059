"""REST API for the assignment engine: ticket events, rules, SLA policies, rebalancing."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from deskroute.activity import get_recent as activity_get_recent, start_redis_subscriber
from deskroute.config import STORE_BACKEND
from deskroute.errors import (
    AgentNotFound,
    AssignmentConflict,
    ConfigurationError,
    RebalanceInProgress,
    TicketNotFound,
)
from deskroute.models import (
    Agent,
    AssignmentDecision,
    AssignmentResult,
    AssignmentRule,
    AssignmentRuleInput,
    ManualAssignment,
    Priority,
    RebalanceReport,
    RebalanceScope,
    SLAPolicy,
    SLAStatus,
    Ticket,
    TicketCreated,
    TicketReassigned,
)
from deskroute.runtime import get_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_redis_subscriber()
    logger.info("API starting (%s store).", STORE_BACKEND)
    yield


app = FastAPI(
    title="Ticket Assignment Engine",
    description="Rule-based and scored ticket-to-agent assignment with SLA deadlines.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization"],
)


# --- Error mapping ---


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(TicketNotFound)
@app.exception_handler(AgentNotFound)
async def not_found_handler(request: Request, exc: Exception):
    kind = "Ticket" if isinstance(exc, TicketNotFound) else "Agent"
    return JSONResponse(status_code=404, content={"detail": f"{kind} {exc} not found"})


@app.exception_handler(AssignmentConflict)
async def conflict_handler(request: Request, exc: AssignmentConflict):
    logger.warning("Assignment conflict reported to caller: %s", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc), "retryable": True})


@app.exception_handler(RebalanceInProgress)
async def rebalance_busy_handler(request: Request, exc: RebalanceInProgress):
    return JSONResponse(status_code=409, content={"detail": str(exc), "retryable": True})


# --- Ticket events and assignment ---


@app.post("/events/ticket-created", response_model=AssignmentResult)
def ticket_created(event: TicketCreated) -> AssignmentResult:
    """Persist a newly created ticket and assign it in the request path."""
    return get_services().coordinator.on_ticket_created(event.ticket)


@app.post("/events/ticket-reassigned", response_model=AssignmentResult)
def ticket_reassigned(event: TicketReassigned) -> AssignmentResult:
    return get_services().coordinator.reassign(event.ticket_id, event.reason)


@app.post("/tickets/{ticket_id}/assign", response_model=AssignmentResult)
def assign_ticket(ticket_id: str) -> AssignmentResult:
    """Run assignment for a stored, still-unassigned ticket."""
    return get_services().coordinator.assign(ticket_id)


@app.post("/tickets/{ticket_id}/assign-manual", response_model=AssignmentResult)
def assign_ticket_manually(ticket_id: str, payload: ManualAssignment) -> AssignmentResult:
    """Admin override: assign to a named agent, bypassing rules and scoring."""
    return get_services().coordinator.assign_manually(ticket_id, payload.agent_id, payload.reason)


@app.get("/tickets/{ticket_id}", response_model=Ticket)
def get_ticket(ticket_id: str) -> Ticket:
    ticket = get_services().store.get_ticket(ticket_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket


@app.get("/tickets/{ticket_id}/decisions", response_model=list[AssignmentDecision])
def get_ticket_decisions(ticket_id: str) -> list[AssignmentDecision]:
    """Assignment history of one ticket, oldest first."""
    services = get_services()
    if services.store.get_ticket(ticket_id) is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return services.store.list_decisions(ticket_id=ticket_id)


@app.get("/decisions", response_model=list[AssignmentDecision])
def list_decisions(limit: int = 100) -> list[AssignmentDecision]:
    if limit < 1 or limit > 1000:
        limit = 100
    return get_services().store.list_decisions(limit=limit)


# --- Rules ---


class RuleStats(BaseModel):
    total: int
    enabled: int
    rule_decisions: int = Field(..., description="Decisions recorded through the rule path")
    by_rule: dict[str, int] = Field(default_factory=dict)


@app.get("/rules", response_model=list[AssignmentRule])
def list_rules() -> list[AssignmentRule]:
    return get_services().rule_admin.list_rules()


@app.post("/rules", status_code=201, response_model=AssignmentRule)
def create_rule(payload: AssignmentRuleInput) -> AssignmentRule:
    return get_services().rule_admin.create(payload)


@app.get("/rules/stats", response_model=RuleStats)
def rule_stats() -> RuleStats:
    return RuleStats(**get_services().rule_admin.stats())


@app.get("/rules/{rule_id}", response_model=AssignmentRule)
def get_rule(rule_id: str) -> AssignmentRule:
    rule = get_services().rule_admin.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@app.put("/rules/{rule_id}", response_model=AssignmentRule)
def update_rule(rule_id: str, payload: AssignmentRuleInput) -> AssignmentRule:
    rule = get_services().rule_admin.update(rule_id, payload)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@app.delete("/rules/{rule_id}")
def delete_rule(rule_id: str) -> dict:
    if not get_services().rule_admin.delete(rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return {"status": "deleted", "rule_id": rule_id}


# --- SLA ---


@app.get("/sla-policies", response_model=list[SLAPolicy])
def list_sla_policies() -> list[SLAPolicy]:
    return get_services().sla_admin.list_policies()


@app.put("/sla-policies", response_model=SLAPolicy)
def upsert_sla_policy(policy: SLAPolicy) -> SLAPolicy:
    return get_services().sla_admin.upsert(policy)


@app.delete("/sla-policies/{priority}/{category}")
def delete_sla_policy(priority: Priority, category: str) -> dict:
    if not get_services().sla_admin.delete(priority, category):
        raise HTTPException(status_code=404, detail="SLA policy not found")
    return {"status": "deleted", "priority": priority.value, "category": category}


@app.post("/sla/check", response_model=list[SLAStatus])
def check_sla() -> list[SLAStatus]:
    """Evaluate SLA state of all open tickets and send any due breach alerts."""
    return get_services().sla_monitor.check()


# --- Workload and rebalancing ---


@app.post("/rebalance", response_model=RebalanceReport)
def rebalance(scope: Optional[RebalanceScope] = None) -> RebalanceReport:
    return get_services().rebalancer.rebalance(scope)


@app.get("/workload")
def get_workload() -> dict:
    """Weighted open load per active agent."""
    services = get_services()
    agents = [a.agent_id for a in services.coordinator.directory.snapshot().agents if a.active]
    return {"loads": services.coordinator.workload.snapshot(agents)}


# --- Agent directory ---


@app.get("/agents", response_model=list[Agent])
def list_agents() -> list[Agent]:
    return get_services().directory.list_agents()


@app.post("/agents", status_code=201, response_model=Agent)
def register_agent(agent: Agent) -> Agent:
    """Upsert an agent record (normally published by the user-management service)."""
    get_services().directory.register_agent(agent)
    return agent


# --- Ops ---


@app.get("/activity")
def get_activity(limit: int = 100, type: Optional[str] = None) -> dict:
    """Recent engine events (assignments, unassigned tickets, SLA alerts, rebalances)."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": activity_get_recent(limit=limit, event_type=type)}


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "store": STORE_BACKEND}
