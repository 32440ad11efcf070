"""
SafetyNet — Governance Schema

Tables, constraints and indexes for proposals, votes and the governance
audit log. Plain Postgres, idempotent.

The primary key on ``governance_votes (proposal_id, voter_id)`` is what
prevents double voting; application-level checks only produce nicer errors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from safetynet.clients.postgres import PostgresClient

logger = structlog.get_logger()

GOVERNANCE_SQL = """
CREATE TABLE IF NOT EXISTS governance_proposals (
    id                  TEXT PRIMARY KEY,
    title               TEXT NOT NULL,
    description         TEXT NOT NULL,
    proposal_type       TEXT NOT NULL,
    category            TEXT NOT NULL DEFAULT '',
    proposer_id         TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'draft'
                        CHECK (status IN ('draft', 'active', 'passed', 'rejected')),
    quorum_fraction     DOUBLE PRECISION NOT NULL
                        CHECK (quorum_fraction > 0 AND quorum_fraction <= 1),
    voting_period_days  INTEGER NOT NULL CHECK (voting_period_days > 0),
    proposed_changes    JSONB,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    activated_at        TIMESTAMPTZ,
    voting_ends_at      TIMESTAMPTZ,
    for_power           DOUBLE PRECISION NOT NULL DEFAULT 0,
    against_power       DOUBLE PRECISION NOT NULL DEFAULT 0,
    abstain_power       DOUBLE PRECISION NOT NULL DEFAULT 0,
    eligible_power      DOUBLE PRECISION NOT NULL DEFAULT 0,
    quorum_reached      BOOLEAN NOT NULL DEFAULT FALSE,
    finalized_at        TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_proposals_status_ends
    ON governance_proposals (status, voting_ends_at);

CREATE INDEX IF NOT EXISTS idx_proposals_created
    ON governance_proposals (created_at DESC);

CREATE TABLE IF NOT EXISTS governance_votes (
    proposal_id   TEXT NOT NULL REFERENCES governance_proposals (id),
    voter_id      TEXT NOT NULL,
    choice        TEXT NOT NULL CHECK (choice IN ('for', 'against', 'abstain')),
    weight        DOUBLE PRECISION NOT NULL CHECK (weight >= 0),
    rationale     TEXT,
    cast_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (proposal_id, voter_id)
);

CREATE INDEX IF NOT EXISTS idx_votes_voter
    ON governance_votes (voter_id, cast_at DESC);

CREATE TABLE IF NOT EXISTS governance_audit (
    id            TEXT PRIMARY KEY,
    recorded_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    event_type    TEXT NOT NULL,
    proposal_id   TEXT NOT NULL,
    voter_id      TEXT,
    payload       JSONB NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_governance_audit_proposal
    ON governance_audit (proposal_id, recorded_at)
"""


async def ensure_governance_schema(postgres: PostgresClient) -> None:
    """Create governance tables and indexes. Idempotent."""
    await postgres.execute_script(GOVERNANCE_SQL)
    logger.info("governance_schema_ensured")
