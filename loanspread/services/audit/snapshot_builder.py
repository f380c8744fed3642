"""
Decision snapshot builder.

A snapshot is the immutable audit record of one credit decision: the decision
itself, the financial metrics behind it, the policy evaluation, every override
and attestation, and the committee record. Its canonical hash travels next to
the body and is never written into it.
"""
import math
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from loanspread.exceptions import DecisionNotFoundError, SnapshotBuildError
from loanspread.models.audit import LedgerEvent
from loanspread.models.decision import (
    CommitteeMember,
    CommitteeVote,
    CreditDecision,
    DecisionSnapshotRecord,
    VoteChoice,
)
from loanspread.services.hashing import hash_value, sha256_hex
from loanspread.services.metric_resolver import MetricResolver
from loanspread.services.policy import DEFAULT_POLICY_RULES, PolicyRule, evaluate_policy, metric_values
from loanspread.utils.clock import Clock, iso_timestamp, utcnow

logger = structlog.get_logger(__name__)

SNAPSHOT_VERSION = "1.0"
OUTCOME_PENDING = "pending"

# Ledger events that belong in a decision snapshot.
LEDGER_EVENT_PREFIXES = ("decision.", "committee.", "attestation.", "override.")
LEDGER_EVENT_LIMIT = 100


def committee_quorum(member_count: int) -> int:
    """Half the roster, rounded up."""
    return math.ceil(member_count / 2)


def committee_outcome(votes: Iterable[str], quorum: int) -> str:
    """
    Committee outcome from the votes cast.

    Any decline vetoes. Otherwise any conditional approval wins. Plain approval
    needs at least `quorum` votes. Anything else is pending.
    """
    votes = list(votes)
    tally = Counter(votes)
    if tally[VoteChoice.DECLINE.value]:
        return VoteChoice.DECLINE.value
    if tally[VoteChoice.APPROVE_WITH_CONDITIONS.value]:
        return VoteChoice.APPROVE_WITH_CONDITIONS.value
    if len(votes) >= quorum and tally[VoteChoice.APPROVE.value]:
        return VoteChoice.APPROVE.value
    return OUTCOME_PENDING


def _ts(value: Optional[datetime]) -> str:
    return iso_timestamp(value) if value is not None else ""


@dataclass
class SnapshotResult:
    """A built snapshot and its out-of-band hash."""

    snapshot: Dict[str, Any]
    snapshot_hash: str
    financial_snapshot: Dict[str, Any]
    policy_results: List[Dict[str, Any]]
    sequence: Optional[int] = None

    @property
    def snapshot_id(self) -> str:
        return self.snapshot["meta"]["snapshot_id"]


class AuditSnapshotBuilder:
    """
    Builds decision snapshots for one tenant.

    Example:
        result = AuditSnapshotBuilder(db, "bank-1").build("deal-9")
        result.snapshot_hash  # sent as a header, never inside result.snapshot
    """

    def __init__(
        self,
        db: Session,
        tenant_id: str,
        policy_rules: Sequence[PolicyRule] = tuple(DEFAULT_POLICY_RULES),
        clock: Clock = utcnow,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.policy_rules = policy_rules
        self.clock = clock

    def _latest_decision(self, case_id: str) -> CreditDecision:
        decision = (
            self.db.query(CreditDecision)
            .filter(CreditDecision.tenant_id == self.tenant_id, CreditDecision.case_id == case_id)
            .order_by(CreditDecision.created_at.desc())
            .first()
        )
        if decision is None:
            raise DecisionNotFoundError(case_id)
        return decision

    def _policy_results(self, decision: CreditDecision, financial_snapshot: Dict[str, Any]) -> List[Dict[str, Any]]:
        stored = decision.policy_results
        if isinstance(stored, dict):
            stored = stored.get("rule_results") or stored.get("rules")
        if stored:
            return list(stored)
        return evaluate_policy(self.policy_rules, metric_values(financial_snapshot))

    def _committee(self, case_id: str, minutes: Optional[str]) -> Dict[str, Any]:
        member_count = (
            self.db.query(func.count(CommitteeMember.id))
            .filter(CommitteeMember.tenant_id == self.tenant_id, CommitteeMember.case_id == case_id)
            .scalar()
        )
        votes = [
            {
                "voter_user_id": vote.voter_user_id,
                "voter_name": vote.voter_name,
                "vote": vote.vote,
                "comment": vote.comment,
                "created_at": _ts(vote.created_at),
            }
            for vote in (
                self.db.query(CommitteeVote)
                .filter(CommitteeVote.tenant_id == self.tenant_id, CommitteeVote.case_id == case_id)
                .order_by(CommitteeVote.created_at, CommitteeVote.voter_user_id)
                .all()
            )
        ]
        quorum = committee_quorum(member_count or 0)
        return {
            "quorum": quorum,
            "member_count": member_count or 0,
            "vote_count": len(votes),
            "outcome": committee_outcome((v["vote"] for v in votes), quorum),
            "complete": len(votes) >= quorum,
            "votes": votes,
            "minutes": minutes,
            "minutes_hash": sha256_hex(minutes) if minutes else None,
        }

    def _ledger_events(self, case_id: str) -> List[Dict[str, Any]]:
        events = (
            self.db.query(LedgerEvent)
            .filter(LedgerEvent.tenant_id == self.tenant_id, LedgerEvent.case_id == case_id)
            .order_by(LedgerEvent.created_at)
            .all()
        )
        return [
            {"id": str(event.id), "type": event.event_key, "created_at": _ts(event.created_at)}
            for event in events
            if event.event_key.startswith(LEDGER_EVENT_PREFIXES)
        ][:LEDGER_EVENT_LIMIT]

    def collect(
        self,
        case_id: str,
        snapshot_id: Optional[str] = None,
        as_of: Optional[str] = None,
    ) -> SnapshotResult:
        """
        Assemble the snapshot body and its hash without persisting anything.

        Raises:
            DecisionNotFoundError: The case has no decision.
        """
        decision = self._latest_decision(case_id)
        generated_at = iso_timestamp(self.clock())
        financial_snapshot = MetricResolver(self.db, self.tenant_id, case_id).financial_snapshot()
        policy_results = self._policy_results(decision, financial_snapshot)
        passed = sum(1 for r in policy_results if r.get("passed") is True or r.get("result") == "pass")

        metrics = financial_snapshot["metrics"]
        snapshot = {
            "meta": {
                "case_id": case_id,
                "decision_id": str(decision.id),
                "snapshot_id": snapshot_id or str(uuid.uuid4()),
                "snapshot_version": SNAPSHOT_VERSION,
                "generated_at": generated_at,
                "as_of": as_of or generated_at,
            },
            "decision": {
                "status": decision.status or "",
                "outcome": decision.outcome or "",
                "summary": decision.summary or "",
                "confidence": decision.confidence,
                "confidence_explanation": decision.confidence_explanation or "",
                "created_at": _ts(decision.created_at),
                "created_by_user_id": decision.created_by_user_id,
                "model": decision.model,
            },
            "financials": {
                **{name.lower(): metric["value"] for name, metric in metrics.items()},
                "sources": {name.lower(): metric["source"] for name, metric in metrics.items()},
                "completeness_pct": financial_snapshot["completeness_pct"],
                "missing_required": financial_snapshot["missing_required"],
                "as_of_date": financial_snapshot["as_of_date"],
            },
            "policy": {
                "rules_evaluated": len(policy_results),
                "rules_passed": passed,
                "rules_failed": len(policy_results) - passed,
                "exceptions": [
                    {
                        "rule_key": r.get("rule_key", ""),
                        "severity": r.get("severity", "info"),
                        "reason": r.get("reason", ""),
                    }
                    for r in policy_results
                    if not (r.get("passed") is True or r.get("result") == "pass")
                ],
                "policy_eval_summary": {"rule_results": policy_results},
            },
            "overrides": [
                {
                    "field_path": o.field_path,
                    "old_value": o.old_value,
                    "new_value": o.new_value,
                    "reason": o.reason or "",
                    "justification": o.justification or "",
                    "severity": o.severity or "info",
                    "created_by_user_id": o.created_by_user_id or "",
                    "created_at": _ts(o.created_at),
                }
                for o in decision.overrides
            ],
            "attestations": [
                {
                    "attested_by_user_id": a.attested_by_user_id,
                    "attested_by_name": a.attested_by_name,
                    "attested_role": a.attested_role or "",
                    "statement": a.statement,
                    "snapshot_hash": a.snapshot_hash or "",
                    "created_at": _ts(a.created_at),
                }
                for a in decision.attestations
            ],
            "committee": self._committee(case_id, decision.committee_minutes),
            "ledger_events": self._ledger_events(case_id),
        }

        try:
            snapshot_hash = hash_value(snapshot)
        except (TypeError, ValueError) as e:
            raise SnapshotBuildError("Snapshot is not canonical JSON", details={"error": str(e)})
        return SnapshotResult(
            snapshot=snapshot,
            snapshot_hash=snapshot_hash,
            financial_snapshot=financial_snapshot,
            policy_results=policy_results,
        )

    def build(self, case_id: str, snapshot_id: Optional[str] = None, as_of: Optional[str] = None) -> SnapshotResult:
        """
        Assemble, hash and append a snapshot for the case.

        Every call appends a new record; earlier snapshots are never edited.
        """
        snapshot_id = snapshot_id or str(uuid.uuid4())
        result = self.collect(case_id, snapshot_id=snapshot_id, as_of=as_of)

        last_sequence = (
            self.db.query(func.max(DecisionSnapshotRecord.sequence))
            .filter(DecisionSnapshotRecord.tenant_id == self.tenant_id, DecisionSnapshotRecord.case_id == case_id)
            .scalar()
        )
        result.sequence = (last_sequence or 0) + 1
        self.db.add(DecisionSnapshotRecord(
            id=uuid.UUID(snapshot_id),
            tenant_id=self.tenant_id,
            case_id=case_id,
            decision_id=uuid.UUID(result.snapshot["meta"]["decision_id"]),
            snapshot_version=SNAPSHOT_VERSION,
            sequence=result.sequence,
            body=result.snapshot,
            snapshot_hash=result.snapshot_hash,
            created_at=self.clock(),
        ))
        LedgerEvent.record(
            self.db,
            self.tenant_id,
            case_id,
            "snapshot.built",
            f"Decision snapshot {result.sequence} built",
            meta={"snapshot_id": snapshot_id, "snapshot_hash": result.snapshot_hash, "sequence": result.sequence},
        )
        self.db.commit()

        logger.info(
            "decision_snapshot_built",
            case_id=case_id,
            snapshot_id=snapshot_id,
            sequence=result.sequence,
            committee_outcome=result.snapshot["committee"]["outcome"],
            snapshot_hash=result.snapshot_hash,
        )
        return result
