"""
Unit tests for the fact store.
"""
from loanspread.models.fact import HEARTBEAT_FACT_TYPE, Fact
from loanspread.services.fact_store import FactInput, FactStore


def _fact(**overrides) -> FactInput:
    values = dict(
        tenant_id="bank-1",
        case_id="deal-1",
        source_document_id="doc-1",
        fact_type="BALANCE_SHEET",
        fact_key="TOTAL_ASSETS",
        value_num=1000.0,
        confidence=0.9,
        period_end="2024-12-31",
    )
    values.update(overrides)
    return FactInput(**values)


class TestUpsert:
    """Tests for fact identity and upsert."""

    def test_same_identity_updates(self, db_session):
        store = FactStore(db_session)
        first = store.upsert_facts([_fact(value_num=1000.0)])[0]
        second = store.upsert_facts([_fact(value_num=2000.0)])[0]

        assert first.created is True
        assert second.created is False
        assert first.fact_id == second.fact_id
        assert db_session.query(Fact).count() == 1
        assert db_session.query(Fact).one().fact_value_num == 2000.0

    def test_null_periods_share_identity(self, db_session):
        store = FactStore(db_session)
        store.upsert_facts([_fact(period_end=None)])
        store.upsert_facts([_fact(period_end=None, value_num=5.0)])

        assert db_session.query(Fact).count() == 1

    def test_different_periods_are_distinct(self, db_session):
        store = FactStore(db_session)
        store.upsert_facts([_fact(period_end="2023-12-31"), _fact(period_end="2024-12-31")])

        assert db_session.query(Fact).count() == 2


class TestReads:
    """Tests for fact lookups."""

    def test_latest_picks_most_recent_period(self, db_session):
        store = FactStore(db_session)
        store.upsert_facts([
            _fact(period_end="2023-12-31", value_num=1.0),
            _fact(period_end="2024-12-31", value_num=2.0),
        ])

        assert store.latest("bank-1", "deal-1", "BALANCE_SHEET", "TOTAL_ASSETS").fact_value_num == 2.0
        exact = store.latest("bank-1", "deal-1", "BALANCE_SHEET", "TOTAL_ASSETS", period_end="2023-12-31")
        assert exact.fact_value_num == 1.0

    def test_heartbeat_is_not_substantive(self, db_session):
        store = FactStore(db_session)
        store.write_heartbeat("bank-1", "deal-1", "doc-1", ocr_chars=120, provenance={"path": "test"})

        assert store.has_substantive_facts("bank-1", "deal-1") is False
        assert store.facts_for_case("bank-1", "deal-1") == []
        heartbeat = store.facts_for_case("bank-1", "deal-1", include_heartbeat=True)[0]
        assert heartbeat.fact_type == HEARTBEAT_FACT_TYPE
        assert heartbeat.fact_value_num == 120.0

        store.upsert_facts([_fact()])
        assert store.has_substantive_facts("bank-1", "deal-1") is True

    def test_tenants_are_isolated(self, db_session):
        store = FactStore(db_session)
        store.upsert_facts([_fact(tenant_id="bank-2")])

        assert store.facts_for_case("bank-1", "deal-1") == []

    def test_rent_roll_rows_replaced(self, db_session):
        store = FactStore(db_session)
        store.replace_rent_roll_rows("bank-1", "deal-1", "doc-1", [{"unit_id": "101"}, {"unit_id": "102"}])
        store.replace_rent_roll_rows("bank-1", "deal-1", "doc-1", [{"unit_id": "201"}])

        rows = store.rent_roll_rows("bank-1", "deal-1")
        assert [row.unit_id for row in rows] == ["201"]
