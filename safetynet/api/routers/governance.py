"""
SafetyNet — Governance REST Router

Proposal authoring, activation, voting and status for members.

Endpoints:
  GET    /api/v1/governance/proposals                  — List proposals (filters, pages)
  POST   /api/v1/governance/proposals                  — Create a draft
  GET    /api/v1/governance/proposals/{id}             — Status with live tally
  PATCH  /api/v1/governance/proposals/{id}             — Edit own draft
  DELETE /api/v1/governance/proposals/{id}             — Delete own draft
  POST   /api/v1/governance/proposals/{id}/activate    — Open voting (administrators)
  POST   /api/v1/governance/proposals/{id}/votes       — Cast a vote
  GET    /api/v1/governance/proposals/{id}/votes/me    — Caller's own vote
  POST   /api/v1/governance/proposals/{id}/finalize    — Manual finalize attempt
  GET    /api/v1/governance/votes/history              — Caller's voting history

The caller is identified by the member id header set by the upstream
auth proxy (``X-Member-Id`` by default).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from safetynet.systems.governance.errors import GovernanceError, StoreUnavailableError
from safetynet.systems.governance.lifecycle import page_bounds

if TYPE_CHECKING:
    from safetynet.primitives.governance import Proposal, ProposalStatusView, Vote
    from safetynet.systems.governance.service import GovernanceService

logger = structlog.get_logger("safetynet.api.governance")

router = APIRouter(prefix="/api/v1/governance")

DEFAULT_MEMBER_ID_HEADER = "X-Member-Id"


# ─── Helpers ──────────────────────────────────────────────────────


def _service(request: Request) -> GovernanceService:
    return request.app.state.governance


def _member_id(request: Request) -> str:
    config = getattr(request.app.state, "config", None)
    header = config.server.member_id_header if config is not None else DEFAULT_MEMBER_ID_HEADER
    member_id = request.headers.get(header, "").strip()
    if not member_id:
        raise HTTPException(status_code=401, detail=f"missing {header} header")
    return member_id


def _proposal_data(proposal: Proposal) -> dict[str, Any]:
    return proposal.model_dump(mode="json")


def _vote_data(vote: Vote) -> dict[str, Any]:
    return vote.model_dump(mode="json")


def _status_data(view: ProposalStatusView) -> dict[str, Any]:
    evaluation = view.evaluation
    return {
        "proposal": _proposal_data(view.proposal),
        "voting_open": view.voting_open,
        "tally": {
            "for_power": evaluation.for_power,
            "against_power": evaluation.against_power,
            "abstain_power": evaluation.abstain_power,
            "cast_power": evaluation.cast_power,
            "eligible_power": evaluation.eligible_power,
            "required_power": evaluation.required_power,
        },
        "quorum_reached": evaluation.quorum_reached,
        "voting_ended": evaluation.voting_ended,
        "projected_outcome": evaluation.outcome.value if evaluation.outcome else None,
    }


def _page(items: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    # Report the page size actually applied, not the one requested
    _, limit = page_bounds(page, limit)
    return {"items": items, "total": total, "page": page, "limit": limit}


# ─── Proposals ────────────────────────────────────────────────────


@router.get("/proposals")
async def list_proposals(
    request: Request,
    status: str | None = None,
    proposal_type: str | None = Query(None, alias="type"),
    category: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict[str, Any]:
    """List proposals, newest first."""
    proposals, total = await _service(request).controller.list_proposals(
        status=status, proposal_type=proposal_type, category=category, page=page, limit=limit
    )
    return {
        "status": "ok",
        "data": _page([_proposal_data(p) for p in proposals], total, page, limit),
    }


@router.post("/proposals", status_code=201)
async def create_proposal(request: Request, body: dict[str, Any]) -> dict[str, Any]:
    """
    Create a DRAFT proposal.

    Body: {title, description, proposal_type?, category?, proposed_changes?,
           quorum_fraction?, voting_period_days?}
    """
    proposal = await _service(request).controller.create_proposal(
        proposer_id=_member_id(request),
        title=body.get("title"),
        description=body.get("description"),
        proposal_type=body.get("proposal_type", "other"),
        category=body.get("category", "general"),
        proposed_changes=body.get("proposed_changes"),
        quorum_fraction=body.get("quorum_fraction"),
        voting_period_days=body.get("voting_period_days"),
    )
    return {"status": "ok", "data": _proposal_data(proposal)}


@router.get("/proposals/{proposal_id}")
async def get_proposal_status(request: Request, proposal_id: str) -> dict[str, Any]:
    view = await _service(request).controller.status(proposal_id)
    return {"status": "ok", "data": _status_data(view)}


@router.patch("/proposals/{proposal_id}")
async def update_draft(request: Request, proposal_id: str, body: dict[str, Any]) -> dict[str, Any]:
    proposal = await _service(request).controller.update_draft(
        proposal_id, actor_id=_member_id(request), changes=body
    )
    return {"status": "ok", "data": _proposal_data(proposal)}


@router.delete("/proposals/{proposal_id}")
async def delete_draft(request: Request, proposal_id: str) -> dict[str, Any]:
    await _service(request).controller.delete_draft(proposal_id, actor_id=_member_id(request))
    return {"status": "ok", "data": {"id": proposal_id, "deleted": True}}


@router.post("/proposals/{proposal_id}/activate")
async def activate_proposal(
    request: Request, proposal_id: str, body: dict[str, Any]
) -> dict[str, Any]:
    """
    Open voting on a draft. The caller must be a configured administrator.

    Body: {quorum_fraction, voting_period_days}
    """
    proposal = await _service(request).controller.activate(
        proposal_id,
        quorum_fraction=body.get("quorum_fraction"),
        voting_period_days=body.get("voting_period_days"),
        actor_id=_member_id(request),
    )
    return {"status": "ok", "data": _proposal_data(proposal)}


@router.post("/proposals/{proposal_id}/finalize")
async def finalize_proposal(request: Request, proposal_id: str) -> dict[str, Any]:
    result = await _service(request).controller.finalize(proposal_id)
    return {"status": "ok", "data": result.model_dump(mode="json")}


# ─── Votes ────────────────────────────────────────────────────────


@router.post("/proposals/{proposal_id}/votes", status_code=201)
async def cast_vote(request: Request, proposal_id: str, body: dict[str, Any]) -> dict[str, Any]:
    """
    Cast the caller's vote.

    Body: {vote: "for" | "against" | "abstain", rationale?}
    """
    vote = await _service(request).ledger.cast_vote(
        proposal_id,
        voter_id=_member_id(request),
        choice=body.get("vote", body.get("choice")),
        rationale=body.get("rationale"),
    )
    return {"status": "ok", "data": _vote_data(vote)}


@router.get("/proposals/{proposal_id}/votes/me")
async def get_own_vote(request: Request, proposal_id: str) -> dict[str, Any]:
    vote = await _service(request).ledger.get_vote(proposal_id, _member_id(request))
    return {
        "status": "ok",
        "data": {"has_voted": vote is not None, "vote": _vote_data(vote) if vote else None},
    }


@router.get("/votes/history")
async def voting_history(request: Request, page: int = 1, limit: int = 10) -> dict[str, Any]:
    votes, total = await _service(request).ledger.voting_history(
        _member_id(request), page=page, limit=limit
    )
    return {"status": "ok", "data": _page([_vote_data(v) for v in votes], total, page, limit)}


# ─── Error mapping ────────────────────────────────────────────────


async def _governance_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, GovernanceError)
    return JSONResponse(
        status_code=exc.http_status,
        content={"status": "error", "error": exc.code, "reason": exc.reason},
    )


async def _store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, StoreUnavailableError)
    logger.error(
        "governance_store_unavailable",
        path=request.url.path,
        operation=exc.operation,
        cause=repr(exc.__cause__),
    )
    return JSONResponse(
        status_code=exc.http_status,
        content={"status": "error", "error": exc.code, "reason": str(exc)},
        headers={"Retry-After": "5"},
    )


def install_error_handlers(app: FastAPI) -> None:
    """Map governance exceptions to JSON error bodies."""
    app.add_exception_handler(GovernanceError, _governance_error_handler)
    app.add_exception_handler(StoreUnavailableError, _store_unavailable_handler)
