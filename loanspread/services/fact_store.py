"""
Fact store.

Typed upsert and lookup of financial facts. Identity is
(tenant, case, source document, fact type, fact key, period start, period end):
writing the same identity twice updates the existing row.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loanspread.exceptions import FactWriteError
from loanspread.models.fact import HEARTBEAT_FACT_TYPE, Fact, RentRollRow

logger = structlog.get_logger(__name__)


@dataclass
class FactInput:
    """One fact to be written."""

    tenant_id: str
    case_id: str
    source_document_id: str
    fact_type: str
    fact_key: str
    value_num: Optional[float] = None
    value_text: Optional[str] = None
    confidence: Optional[float] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    provenance: Dict[str, Any] = field(default_factory=dict)
    currency: str = "USD"


@dataclass
class UpsertResult:
    """Outcome of writing one fact."""

    ok: bool
    fact_key: str
    fact_id: Optional[str] = None
    created: bool = False
    error: Optional[str] = None


def _period_clause(column, value: Optional[str]):
    return column.is_(None) if value is None else column == value


class FactStore:
    """
    Reads and writes Fact rows for one session.

    Each fact is committed on its own so a failing item never rolls back
    its siblings. Concurrent writers of the same identity race on the unique
    constraint; the loser retries once as an update, so the later write wins.
    """

    def __init__(self, db: Session):
        self.db = db

    # Writes

    def upsert_facts(self, items: Iterable[FactInput]) -> List[UpsertResult]:
        """Write each item, returning one result per item in order."""
        results = []
        for item in items:
            results.append(self._upsert_with_retry(item))
        written = sum(1 for r in results if r.ok)
        logger.debug("facts_upserted", written=written, failed=len(results) - written)
        return results

    def _upsert_with_retry(self, item: FactInput) -> UpsertResult:
        retried = False
        while True:
            try:
                fact, created = self._write_one(item)
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                if not retried:
                    retried = True
                    logger.info("fact_upsert_retry", fact_key=item.fact_key)
                    continue
                logger.warning("fact_upsert_conflict", fact_key=item.fact_key, error=str(e.orig))
                return UpsertResult(ok=False, fact_key=item.fact_key, error=str(e.orig))
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning("fact_upsert_failed", fact_key=item.fact_key, error=str(e))
                return UpsertResult(ok=False, fact_key=item.fact_key, error=str(e))
            return UpsertResult(ok=True, fact_key=item.fact_key, fact_id=str(fact.id), created=created)

    def _write_one(self, item: FactInput):
        existing = (
            self.db.query(Fact)
            .filter(
                Fact.tenant_id == item.tenant_id,
                Fact.case_id == item.case_id,
                Fact.source_document_id == item.source_document_id,
                Fact.fact_type == item.fact_type,
                Fact.fact_key == item.fact_key,
                _period_clause(Fact.fact_period_start, item.period_start),
                _period_clause(Fact.fact_period_end, item.period_end),
            )
            .first()
        )
        if existing is not None:
            existing.fact_value_num = item.value_num
            existing.fact_value_text = item.value_text
            existing.confidence = item.confidence
            existing.currency = item.currency
            existing.provenance = dict(item.provenance)
            self.db.flush()
            return existing, False

        fact = Fact(
            tenant_id=item.tenant_id,
            case_id=item.case_id,
            source_document_id=item.source_document_id,
            fact_type=item.fact_type,
            fact_key=item.fact_key,
            fact_period_start=item.period_start,
            fact_period_end=item.period_end,
            fact_value_num=item.value_num,
            fact_value_text=item.value_text,
            confidence=item.confidence,
            currency=item.currency,
            provenance=dict(item.provenance),
        )
        self.db.add(fact)
        self.db.flush()
        return fact, True

    def write_heartbeat(
        self,
        tenant_id: str,
        case_id: str,
        document_id: str,
        ocr_chars: int,
        provenance: Dict[str, Any],
    ) -> UpsertResult:
        """Record that an extraction ran for a document, whatever it found."""
        result = self._upsert_with_retry(
            FactInput(
                tenant_id=tenant_id,
                case_id=case_id,
                source_document_id=document_id,
                fact_type=HEARTBEAT_FACT_TYPE,
                fact_key=HEARTBEAT_FACT_TYPE,
                value_num=float(ocr_chars),
                confidence=1.0,
                provenance=provenance,
            )
        )
        if not result.ok:
            raise FactWriteError("Heartbeat write failed", details={"error": result.error})
        return result

    def delete_for_document(
        self,
        tenant_id: str,
        case_id: str,
        document_id: str,
        fact_type: Optional[str] = None,
    ) -> int:
        """Delete a document's facts (optionally one type). Caller commits."""
        query = self.db.query(Fact).filter(
            Fact.tenant_id == tenant_id,
            Fact.case_id == case_id,
            Fact.source_document_id == document_id,
        )
        if fact_type:
            query = query.filter(Fact.fact_type == fact_type)
        return query.delete(synchronize_session=False)

    def replace_rent_roll_rows(
        self,
        tenant_id: str,
        case_id: str,
        document_id: str,
        rows: List[Dict[str, Any]],
    ) -> int:
        """Delete then insert a document's rent roll rows in one commit."""
        try:
            self.db.query(RentRollRow).filter(
                RentRollRow.tenant_id == tenant_id,
                RentRollRow.case_id == case_id,
                RentRollRow.source_document_id == document_id,
            ).delete(synchronize_session=False)
            for index, row in enumerate(rows):
                self.db.add(
                    RentRollRow(
                        tenant_id=tenant_id,
                        case_id=case_id,
                        source_document_id=document_id,
                        row_index=index,
                        **row,
                    )
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return len(rows)

    # Reads

    def latest(
        self,
        tenant_id: str,
        case_id: str,
        fact_type: str,
        fact_key: str,
        period_end: Optional[str] = None,
    ) -> Optional[Fact]:
        """
        Latest fact for a key.

        With no period, the fact with the most recent non-null period end.
        With a period, only an exact period-end match.
        """
        query = self.db.query(Fact).filter(
            Fact.tenant_id == tenant_id,
            Fact.case_id == case_id,
            Fact.fact_type == fact_type,
            Fact.fact_key == fact_key,
        )
        if period_end is None:
            query = query.filter(Fact.fact_period_end.isnot(None))
        else:
            query = query.filter(Fact.fact_period_end == period_end)
        return query.order_by(Fact.fact_period_end.desc(), Fact.updated_at.desc()).first()

    def candidates(self, tenant_id: str, case_id: str, fact_type: str, fact_key: str) -> List[Fact]:
        """Every fact for a key, any source and period."""
        return (
            self.db.query(Fact)
            .filter(
                Fact.tenant_id == tenant_id,
                Fact.case_id == case_id,
                Fact.fact_type == fact_type,
                Fact.fact_key == fact_key,
            )
            .all()
        )

    def facts_for_case(
        self,
        tenant_id: str,
        case_id: str,
        fact_types: Optional[Iterable[str]] = None,
        include_heartbeat: bool = False,
    ) -> List[Fact]:
        query = self.db.query(Fact).filter(and_(Fact.tenant_id == tenant_id, Fact.case_id == case_id))
        if fact_types:
            query = query.filter(Fact.fact_type.in_(list(fact_types)))
        if not include_heartbeat:
            query = query.filter(Fact.fact_type != HEARTBEAT_FACT_TYPE)
        return query.order_by(Fact.fact_type, Fact.fact_key, Fact.fact_period_end).all()

    def has_substantive_facts(self, tenant_id: str, case_id: str) -> bool:
        """True when the case has at least one fact that is not a heartbeat."""
        return (
            self.db.query(Fact.id)
            .filter(
                Fact.tenant_id == tenant_id,
                Fact.case_id == case_id,
                Fact.fact_type != HEARTBEAT_FACT_TYPE,
            )
            .first()
            is not None
        )

    def fact_types_for_case(self, tenant_id: str, case_id: str) -> Set[str]:
        """Distinct fact types with a numeric value, heartbeats excluded."""
        rows = (
            self.db.query(Fact.fact_type)
            .filter(
                Fact.tenant_id == tenant_id,
                Fact.case_id == case_id,
                Fact.fact_type != HEARTBEAT_FACT_TYPE,
                Fact.fact_value_num.isnot(None),
            )
            .distinct()
            .all()
        )
        return {fact_type for (fact_type,) in rows}

    def rent_roll_row_count(self, tenant_id: str, case_id: str) -> int:
        return (
            self.db.query(RentRollRow)
            .filter(RentRollRow.tenant_id == tenant_id, RentRollRow.case_id == case_id)
            .count()
        )

    def rent_roll_rows(self, tenant_id: str, case_id: str) -> List[RentRollRow]:
        return (
            self.db.query(RentRollRow)
            .filter(RentRollRow.tenant_id == tenant_id, RentRollRow.case_id == case_id)
            .order_by(RentRollRow.source_document_id, RentRollRow.row_index)
            .all()
        )
