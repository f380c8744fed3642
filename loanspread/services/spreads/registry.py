"""
Spread templates and row registries.

A template is a static list of rows (key, label, section, order, optional formula)
plus the formulas those rows use. Templates are validated when they are built:
a formula row may only depend on rows evaluated before it, so the registry can
never contain a cycle or a forward reference.
"""
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, List, Optional, Sequence, Tuple

from loanspread.exceptions import FormulaRegistryError, UnknownFormulaError, UnknownSpreadTypeError
from loanspread.services.spreads.formulas import Formula

SIGN_MINUS = "MINUS"
SIGN_PAREN = "PAREN_NEGATIVE"

COLUMNS_BY_AS_OF = "as_of"
COLUMNS_BY_PERIOD = "period"

STATEMENT_ORDER = {
    "BALANCE_SHEET": 1,
    "INCOME_STATEMENT": 2,
    "CASH_FLOW": 3,
    "RATIOS": 4,
    "EXEC_SUMMARY": 5,
}

STATEMENT_LABELS = {
    "BALANCE_SHEET": "Balance Sheet",
    "INCOME_STATEMENT": "Income Statement",
    "CASH_FLOW": "Cash Flow Analysis",
    "RATIOS": "Financial Ratios",
    "EXEC_SUMMARY": "Executive Summary",
}


SOURCE_FACTS = "facts"
SOURCE_RENT_ROLL = "rent_roll_rows"


@dataclass(frozen=True)
class Prerequisites:
    """
    What a case needs before a template is worth queueing.

    fact_types is satisfied by any one of the listed types; rent_roll_rows
    needs at least one extracted unit row.
    """

    fact_types: Tuple[str, ...] = ()
    rent_roll_rows: bool = False
    note: Optional[str] = None

    def missing(self, present_fact_types: AbstractSet[str], rent_roll_row_count: int) -> List[str]:
        """Unmet requirements, empty when the template is ready."""
        missing = []
        if self.fact_types and not set(self.fact_types) & set(present_fact_types):
            missing.append("facts:" + "|".join(self.fact_types))
        if self.rent_roll_rows and rent_roll_row_count <= 0:
            missing.append("rent_roll_rows")
        return missing


NO_PREREQUISITES = Prerequisites()


@dataclass(frozen=True)
class SpreadRow:
    """One registered row of a template."""

    key: str
    label: str
    section: str
    order: int
    statement: str = "BALANCE_SHEET"
    formula_id: Optional[str] = None
    precision: int = 0
    is_percent: bool = False
    sign: str = SIGN_MINUS
    is_total: bool = False


@dataclass(frozen=True)
class SpreadTemplate:
    """A validated template, rows already in evaluation order."""

    spread_type: str
    title: str
    template_id: str
    version: int
    schema_version: int
    rows: Tuple[SpreadRow, ...]
    formulas: Dict[str, Formula] = field(hash=False)
    column_mode: str = COLUMNS_BY_PERIOD
    fact_types: Optional[Tuple[str, ...]] = None
    section_headers: bool = False
    # (fact type, fact key) -> row key, for sources whose vocabulary differs from the rows
    fact_key_map: Dict[Tuple[str, str], str] = field(default_factory=dict, hash=False)
    source: str = SOURCE_FACTS
    prerequisites: Prerequisites = NO_PREREQUISITES

    @property
    def row_keys(self) -> List[str]:
        return [row.key for row in self.rows]

    def row_key_for(self, fact_type: str, fact_key: str) -> Optional[str]:
        """
        Row a fact feeds. Without a key map every fact keeps its own key; with
        one, facts that land on no row are dropped.
        """
        if not self.fact_key_map:
            return fact_key
        key = self.fact_key_map.get((fact_type, fact_key), fact_key)
        return key if key in self.row_keys else None

    def type_rank(self, fact_type: str) -> int:
        """Earlier fact types in the template win when two feed the same row."""
        if not self.fact_types or fact_type not in self.fact_types:
            return 0
        return self.fact_types.index(fact_type)

    @property
    def evaluation_order(self) -> List[Tuple[str, Optional[str], str]]:
        return [(row.key, row.formula_id, row.statement) for row in self.rows]


def sort_rows(rows: Sequence[SpreadRow]) -> List[SpreadRow]:
    """Statement order first, then row order."""
    return sorted(rows, key=lambda row: (STATEMENT_ORDER.get(row.statement, 99), row.order))


def _find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    visiting, done = set(), set()
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        visiting.add(node)
        path.append(node)
        for dep in graph.get(node, []):
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in graph:
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def validate_registry(rows: Sequence[SpreadRow], formulas: Dict[str, Formula]) -> List[SpreadRow]:
    """
    Check a row registry and return its rows in evaluation order.

    Raises:
        FormulaRegistryError: Duplicate row keys, a dependency cycle, or a row
            depending on a row evaluated after it.
        UnknownFormulaError: A row names a formula that is not registered.
    """
    ordered = sort_rows(rows)
    position: Dict[str, int] = {}
    for index, row in enumerate(ordered):
        if row.key in position:
            raise FormulaRegistryError(f"Duplicate row key {row.key}", details={"row": row.key})
        position[row.key] = index

    graph: Dict[str, List[str]] = {}
    for row in ordered:
        if row.formula_id is None:
            continue
        formula = formulas.get(row.formula_id)
        if formula is None:
            raise UnknownFormulaError(row.formula_id)
        graph[row.key] = [ref for ref in formula.references if ref in position]

    cycle = _find_cycle(graph)
    if cycle:
        raise FormulaRegistryError(
            "Formula dependency cycle: " + " -> ".join(cycle),
            details={"cycle": cycle},
        )

    for row_key, deps in graph.items():
        for dep in deps:
            if position[dep] > position[row_key]:
                raise FormulaRegistryError(
                    f"Row {row_key} depends on {dep}, which is evaluated after it",
                    details={"row": row_key, "dependency": dep},
                )
    return ordered


def build_template(
    spread_type: str,
    title: str,
    template_id: str,
    rows: Sequence[SpreadRow],
    formulas: Sequence[Formula],
    version: int = 1,
    schema_version: int = 3,
    column_mode: str = COLUMNS_BY_PERIOD,
    fact_types: Optional[Sequence[str]] = None,
    section_headers: bool = False,
    fact_key_map: Optional[Dict[Tuple[str, str], str]] = None,
    source: str = SOURCE_FACTS,
    prerequisites: Prerequisites = NO_PREREQUISITES,
) -> SpreadTemplate:
    formula_map = {formula.id: formula for formula in formulas}
    ordered = validate_registry(rows, formula_map)
    return SpreadTemplate(
        spread_type=spread_type,
        title=title,
        template_id=template_id,
        version=version,
        schema_version=schema_version,
        rows=tuple(ordered),
        formulas=formula_map,
        column_mode=column_mode,
        fact_types=tuple(fact_types) if fact_types else None,
        section_headers=section_headers,
        fact_key_map=dict(fact_key_map or {}),
        source=source,
        prerequisites=prerequisites,
    )


# Balance sheet

BALANCE_SHEET_FORMULAS = [
    Formula("BS_TOTAL_CURRENT_ASSETS",
            "CASH_AND_EQUIVALENTS + ACCOUNTS_RECEIVABLE + INVENTORY + PREPAID_EXPENSES + OTHER_CURRENT_ASSETS"),
    Formula("BS_NET_FIXED_ASSETS", "PROPERTY_PLANT_EQUIPMENT - ACCUMULATED_DEPRECIATION"),
    Formula("BS_TOTAL_NON_CURRENT_ASSETS",
            "NET_FIXED_ASSETS + INVESTMENT_PROPERTIES + INTANGIBLE_ASSETS + OTHER_NON_CURRENT_ASSETS"),
    Formula("BS_TOTAL_ASSETS", "TOTAL_CURRENT_ASSETS + TOTAL_NON_CURRENT_ASSETS"),
    Formula("BS_TOTAL_CURRENT_LIABILITIES",
            "ACCOUNTS_PAYABLE + ACCRUED_EXPENSES + SHORT_TERM_DEBT + CURRENT_PORTION_LTD + OTHER_CURRENT_LIABILITIES"),
    Formula("BS_TOTAL_NON_CURRENT_LIABILITIES",
            "LONG_TERM_DEBT + MORTGAGE_PAYABLE + DEFERRED_TAX_LIABILITY + OTHER_NON_CURRENT_LIABILITIES"),
    Formula("BS_TOTAL_LIABILITIES", "TOTAL_CURRENT_LIABILITIES + TOTAL_NON_CURRENT_LIABILITIES"),
    Formula("BS_TOTAL_EQUITY", "COMMON_STOCK + RETAINED_EARNINGS + PARTNERS_CAPITAL + MEMBERS_EQUITY + OTHER_EQUITY"),
    Formula("BS_TOTAL_LIABILITIES_AND_EQUITY", "TOTAL_LIABILITIES + TOTAL_EQUITY"),
    Formula("BS_NET_WORTH", "TOTAL_ASSETS - TOTAL_LIABILITIES"),
    Formula("BS_CURRENT_RATIO", metric_id="CURRENT_RATIO"),
    Formula("BS_DEBT_TO_EQUITY", metric_id="DEBT_TO_EQUITY"),
]


def _bs(key: str, label: str, section: str, order: int, formula_id: Optional[str] = None, **kwargs) -> SpreadRow:
    return SpreadRow(key=key, label=label, section=section, order=order, formula_id=formula_id, **kwargs)


BALANCE_SHEET_ROWS = [
    _bs("CASH_AND_EQUIVALENTS", "Cash & Equivalents", "CURRENT_ASSETS", 10),
    _bs("ACCOUNTS_RECEIVABLE", "Accounts Receivable", "CURRENT_ASSETS", 20),
    _bs("INVENTORY", "Inventory", "CURRENT_ASSETS", 30),
    _bs("PREPAID_EXPENSES", "Prepaid Expenses", "CURRENT_ASSETS", 40),
    _bs("OTHER_CURRENT_ASSETS", "Other Current Assets", "CURRENT_ASSETS", 50),
    _bs("TOTAL_CURRENT_ASSETS", "Total Current Assets", "CURRENT_ASSETS", 60,
        "BS_TOTAL_CURRENT_ASSETS", is_total=True),
    _bs("PROPERTY_PLANT_EQUIPMENT", "Property, Plant & Equipment", "NON_CURRENT_ASSETS", 100),
    _bs("ACCUMULATED_DEPRECIATION", "Less: Accumulated Depreciation", "NON_CURRENT_ASSETS", 110, sign=SIGN_PAREN),
    _bs("NET_FIXED_ASSETS", "Net Fixed Assets", "NON_CURRENT_ASSETS", 120, "BS_NET_FIXED_ASSETS"),
    _bs("INVESTMENT_PROPERTIES", "Investment Properties", "NON_CURRENT_ASSETS", 130),
    _bs("INTANGIBLE_ASSETS", "Intangible Assets", "NON_CURRENT_ASSETS", 140),
    _bs("OTHER_NON_CURRENT_ASSETS", "Other Non-Current Assets", "NON_CURRENT_ASSETS", 150),
    _bs("TOTAL_NON_CURRENT_ASSETS", "Total Non-Current Assets", "NON_CURRENT_ASSETS", 160,
        "BS_TOTAL_NON_CURRENT_ASSETS", is_total=True),
    _bs("TOTAL_ASSETS", "Total Assets", "TOTAL_ASSETS", 200, "BS_TOTAL_ASSETS", is_total=True),
    _bs("ACCOUNTS_PAYABLE", "Accounts Payable", "CURRENT_LIABILITIES", 300),
    _bs("ACCRUED_EXPENSES", "Accrued Expenses", "CURRENT_LIABILITIES", 310),
    _bs("SHORT_TERM_DEBT", "Short-Term Debt / Line of Credit", "CURRENT_LIABILITIES", 320),
    _bs("CURRENT_PORTION_LTD", "Current Portion of LTD", "CURRENT_LIABILITIES", 330),
    _bs("OTHER_CURRENT_LIABILITIES", "Other Current Liabilities", "CURRENT_LIABILITIES", 340),
    _bs("TOTAL_CURRENT_LIABILITIES", "Total Current Liabilities", "CURRENT_LIABILITIES", 350,
        "BS_TOTAL_CURRENT_LIABILITIES", is_total=True),
    _bs("LONG_TERM_DEBT", "Long-Term Debt", "NON_CURRENT_LIABILITIES", 400),
    _bs("MORTGAGE_PAYABLE", "Mortgage Payable", "NON_CURRENT_LIABILITIES", 410),
    _bs("DEFERRED_TAX_LIABILITY", "Deferred Tax Liability", "NON_CURRENT_LIABILITIES", 420),
    _bs("OTHER_NON_CURRENT_LIABILITIES", "Other Non-Current Liabilities", "NON_CURRENT_LIABILITIES", 430),
    _bs("TOTAL_NON_CURRENT_LIABILITIES", "Total Non-Current Liabilities", "NON_CURRENT_LIABILITIES", 440,
        "BS_TOTAL_NON_CURRENT_LIABILITIES", is_total=True),
    _bs("TOTAL_LIABILITIES", "Total Liabilities", "TOTAL_LIABILITIES", 500, "BS_TOTAL_LIABILITIES", is_total=True),
    _bs("COMMON_STOCK", "Common Stock", "EQUITY", 600),
    _bs("RETAINED_EARNINGS", "Retained Earnings", "EQUITY", 610),
    _bs("PARTNERS_CAPITAL", "Partners' Capital", "EQUITY", 620),
    _bs("MEMBERS_EQUITY", "Members' Equity", "EQUITY", 630),
    _bs("OTHER_EQUITY", "Other Equity", "EQUITY", 640),
    _bs("TOTAL_EQUITY", "Total Equity", "EQUITY", 650, "BS_TOTAL_EQUITY", is_total=True),
    _bs("TOTAL_LIABILITIES_AND_EQUITY", "Total Liabilities & Equity", "TOTAL", 700,
        "BS_TOTAL_LIABILITIES_AND_EQUITY", is_total=True),
    _bs("NET_WORTH", "Net Worth", "RATIOS", 900, "BS_NET_WORTH"),
    _bs("CURRENT_RATIO", "Current Ratio", "RATIOS", 910, "BS_CURRENT_RATIO", precision=2),
    _bs("DEBT_TO_EQUITY", "Debt to Equity", "RATIOS", 920, "BS_DEBT_TO_EQUITY", precision=2),
]


# Standard financial analysis

STANDARD_FORMULAS = [
    Formula("STD_TOTAL_CURRENT_ASSETS",
            "CASH_AND_EQUIVALENTS + ACCOUNTS_RECEIVABLE + INVENTORY + PREPAID_EXPENSES + OTHER_CURRENT_ASSETS"),
    Formula("STD_TOTAL_ASSETS",
            "TOTAL_CURRENT_ASSETS + NET_FIXED_ASSETS + INVESTMENT_PROPERTIES + INTANGIBLE_ASSETS"
            " + OTHER_NON_CURRENT_ASSETS"),
    Formula("STD_TOTAL_CURRENT_LIABILITIES",
            "ACCOUNTS_PAYABLE + ACCRUED_EXPENSES + SHORT_TERM_DEBT + CURRENT_PORTION_LTD + OTHER_CURRENT_LIABILITIES"),
    Formula("STD_TOTAL_LIABILITIES",
            "TOTAL_CURRENT_LIABILITIES + LONG_TERM_DEBT + MORTGAGE_PAYABLE + DEFERRED_TAX_LIABILITY"
            " + OTHER_NON_CURRENT_LIABILITIES"),
    Formula("STD_TOTAL_EQUITY", "COMMON_STOCK + RETAINED_EARNINGS + PARTNERS_CAPITAL + MEMBERS_EQUITY + OTHER_EQUITY"),
    Formula("STD_TOTAL_LIABILITIES_AND_EQUITY", "TOTAL_LIABILITIES + TOTAL_EQUITY"),
    Formula("STD_NET_WORTH", metric_id="NET_WORTH"),
    Formula("STD_REVENUE", metric_id="REVENUE"),
    Formula("STD_COGS", metric_id="COGS"),
    Formula("STD_GROSS_PROFIT", metric_id="GROSS_PROFIT"),
    Formula("STD_TOTAL_INCOME", metric_id="TOTAL_INCOME"),
    Formula("STD_TOTAL_OPEX", metric_id="TOTAL_OPEX"),
    Formula("STD_NOI", metric_id="NOI"),
    Formula("STD_CASH_FLOW_AVAILABLE", "NOI"),
    Formula("STD_ANNUAL_DEBT_SERVICE", "DEBT_SERVICE"),
    Formula("STD_EXCESS_CASH_FLOW", metric_id="EXCESS_CASH_FLOW"),
    Formula("STD_DSCR", metric_id="DSCR"),
    Formula("STD_CURRENT_RATIO", metric_id="CURRENT_RATIO"),
    Formula("STD_DEBT_TO_EQUITY", metric_id="DEBT_TO_EQUITY"),
    Formula("STD_EQUITY_RATIO", metric_id="EQUITY_RATIO"),
    Formula("STD_GROSS_MARGIN", metric_id="GROSS_MARGIN"),
    Formula("STD_NET_MARGIN", metric_id="NET_MARGIN"),
    Formula("STD_NOI_MARGIN", metric_id="NOI_MARGIN"),
]


def _std(statement: str, key: str, label: str, section: str, order: int,
         formula_id: Optional[str] = None, **kwargs) -> SpreadRow:
    return SpreadRow(key=key, label=label, section=section, order=order, statement=statement,
                     formula_id=formula_id, **kwargs)


STANDARD_ROWS = [
    # Balance sheet
    _std("BALANCE_SHEET", "CASH_AND_EQUIVALENTS", "Cash & Equivalents", "ASSETS", 10),
    _std("BALANCE_SHEET", "ACCOUNTS_RECEIVABLE", "Accounts Receivable", "ASSETS", 20),
    _std("BALANCE_SHEET", "INVENTORY", "Inventory", "ASSETS", 30),
    _std("BALANCE_SHEET", "TOTAL_CURRENT_ASSETS", "Total Current Assets", "ASSETS", 40,
         "STD_TOTAL_CURRENT_ASSETS", is_total=True),
    _std("BALANCE_SHEET", "NET_FIXED_ASSETS", "Net Fixed Assets", "ASSETS", 50),
    _std("BALANCE_SHEET", "TOTAL_ASSETS", "Total Assets", "ASSETS", 60, "STD_TOTAL_ASSETS", is_total=True),
    _std("BALANCE_SHEET", "TOTAL_CURRENT_LIABILITIES", "Total Current Liabilities", "LIABILITIES", 70,
         "STD_TOTAL_CURRENT_LIABILITIES", is_total=True),
    _std("BALANCE_SHEET", "LONG_TERM_DEBT", "Long-Term Debt", "LIABILITIES", 80),
    _std("BALANCE_SHEET", "TOTAL_LIABILITIES", "Total Liabilities", "LIABILITIES", 90,
         "STD_TOTAL_LIABILITIES", is_total=True),
    _std("BALANCE_SHEET", "TOTAL_EQUITY", "Total Equity", "EQUITY", 100, "STD_TOTAL_EQUITY", is_total=True),
    _std("BALANCE_SHEET", "TOTAL_LIABILITIES_AND_EQUITY", "Total Liabilities & Equity", "EQUITY", 110,
         "STD_TOTAL_LIABILITIES_AND_EQUITY", is_total=True),
    _std("BALANCE_SHEET", "NET_WORTH", "Net Worth", "EQUITY", 120, "STD_NET_WORTH"),
    # Income statement, operating company
    _std("INCOME_STATEMENT", "REVENUE", "Revenue", "REVENUE", 10, "STD_REVENUE"),
    _std("INCOME_STATEMENT", "COGS", "Cost of Goods Sold", "REVENUE", 20, "STD_COGS", sign=SIGN_PAREN),
    _std("INCOME_STATEMENT", "GROSS_PROFIT", "Gross Profit", "REVENUE", 30, "STD_GROSS_PROFIT", is_total=True),
    _std("INCOME_STATEMENT", "SELLING_GENERAL_ADMIN", "Selling, General & Admin", "EXPENSES", 40, sign=SIGN_PAREN),
    _std("INCOME_STATEMENT", "OPERATING_INCOME", "Operating Income", "EXPENSES", 50),
    _std("INCOME_STATEMENT", "DEPRECIATION", "Depreciation", "EXPENSES", 60),
    _std("INCOME_STATEMENT", "AMORTIZATION", "Amortization", "EXPENSES", 70),
    _std("INCOME_STATEMENT", "EBITDA", "EBITDA", "EARNINGS", 80, is_total=True),
    _std("INCOME_STATEMENT", "NET_INCOME", "Net Income", "EARNINGS", 90, is_total=True),
    # Income statement, real estate operations
    _std("INCOME_STATEMENT", "GROSS_RENTAL_INCOME", "Gross Rental Income", "PROPERTY_INCOME", 100),
    _std("INCOME_STATEMENT", "VACANCY_CONCESSIONS", "Vacancy & Concessions", "PROPERTY_INCOME", 110,
         sign=SIGN_PAREN),
    _std("INCOME_STATEMENT", "OTHER_INCOME", "Other Income", "PROPERTY_INCOME", 120),
    _std("INCOME_STATEMENT", "TOTAL_INCOME", "Total Income", "PROPERTY_INCOME", 130, "STD_TOTAL_INCOME",
         is_total=True),
    _std("INCOME_STATEMENT", "TOTAL_OPEX", "Total Operating Expenses", "PROPERTY_EXPENSES", 140, "STD_TOTAL_OPEX",
         is_total=True),
    _std("INCOME_STATEMENT", "NOI", "Net Operating Income", "PROPERTY_EXPENSES", 150, "STD_NOI", is_total=True),
    # Cash flow
    _std("CASH_FLOW", "CASH_FLOW_AVAILABLE", "Cash Flow Available for Debt Service", "COVERAGE", 10,
         "STD_CASH_FLOW_AVAILABLE"),
    _std("CASH_FLOW", "DEBT_SERVICE", "Debt Service (Statement)", "COVERAGE", 20),
    _std("CASH_FLOW", "ANNUAL_DEBT_SERVICE", "Annual Debt Service", "COVERAGE", 30, "STD_ANNUAL_DEBT_SERVICE"),
    _std("CASH_FLOW", "EXCESS_CASH_FLOW", "Excess Cash Flow", "COVERAGE", 40, "STD_EXCESS_CASH_FLOW",
         sign=SIGN_PAREN, is_total=True),
    # Ratios
    _std("RATIOS", "DSCR", "Debt Service Coverage", "COVERAGE", 10, "STD_DSCR", precision=2),
    _std("RATIOS", "CURRENT_RATIO", "Current Ratio", "LIQUIDITY", 20, "STD_CURRENT_RATIO", precision=2),
    _std("RATIOS", "DEBT_TO_EQUITY", "Debt to Equity", "LEVERAGE", 30, "STD_DEBT_TO_EQUITY", precision=2),
    _std("RATIOS", "EQUITY_RATIO", "Equity Ratio", "LEVERAGE", 40, "STD_EQUITY_RATIO", precision=4,
         is_percent=True),
    _std("RATIOS", "GROSS_MARGIN", "Gross Margin", "PROFITABILITY", 50, "STD_GROSS_MARGIN", precision=4,
         is_percent=True),
    _std("RATIOS", "NET_MARGIN", "Net Margin", "PROFITABILITY", 60, "STD_NET_MARGIN", precision=4,
         is_percent=True),
    _std("RATIOS", "NOI_MARGIN", "NOI Margin", "PROFITABILITY", 70, "STD_NOI_MARGIN", precision=4,
         is_percent=True),
    # Executive summary
    _std("EXEC_SUMMARY", "UNIT_COUNT", "Units", "RENT_ROLL", 10),
    _std("EXEC_SUMMARY", "OCCUPANCY_PCT", "Occupancy (%)", "RENT_ROLL", 20, precision=2),
    _std("EXEC_SUMMARY", "IN_PLACE_RENT_MO", "In-Place Rent (Monthly)", "RENT_ROLL", 30),
]


# Operating performance (T12)

T12_FORMULAS = [
    Formula("T12_TOTAL_INCOME", metric_id="TOTAL_INCOME"),
    Formula("T12_TOTAL_OPEX", metric_id="TOTAL_OPEX"),
    Formula("T12_NOI", metric_id="NOI"),
    Formula("T12_TOTAL_CAPEX", "REPLACEMENT_RESERVES + CAPEX"),
    Formula("T12_NET_CASH_FLOW_BEFORE_DEBT", "NOI - TOTAL_CAPEX"),
    Formula("T12_OPEX_RATIO", metric_id="OPEX_RATIO"),
    Formula("T12_NOI_MARGIN", metric_id="NOI_MARGIN"),
]


def _t12(key: str, label: str, section: str, order: int, formula_id: Optional[str] = None, **kwargs) -> SpreadRow:
    return SpreadRow(key=key, label=label, section=section, order=order, statement="INCOME_STATEMENT",
                     formula_id=formula_id, **kwargs)


T12_ROWS = [
    _t12("GROSS_RENTAL_INCOME", "Gross Rental Income", "INCOME", 10),
    _t12("VACANCY_CONCESSIONS", "Vacancy & Concessions", "INCOME", 20, sign=SIGN_PAREN),
    _t12("OTHER_INCOME", "Other Income", "INCOME", 30),
    _t12("TOTAL_INCOME", "Total Income", "INCOME", 40, "T12_TOTAL_INCOME", is_total=True),
    _t12("REPAIRS_MAINTENANCE", "Repairs & Maintenance", "OPERATING_EXPENSES", 110),
    _t12("UTILITIES", "Utilities", "OPERATING_EXPENSES", 120),
    _t12("PROPERTY_MANAGEMENT", "Property Management", "OPERATING_EXPENSES", 130),
    _t12("REAL_ESTATE_TAXES", "Real Estate Taxes", "OPERATING_EXPENSES", 140),
    _t12("INSURANCE", "Insurance", "OPERATING_EXPENSES", 150),
    _t12("PAYROLL", "Payroll", "OPERATING_EXPENSES", 160),
    _t12("MARKETING", "Marketing", "OPERATING_EXPENSES", 170),
    _t12("PROFESSIONAL_FEES", "Professional Fees", "OPERATING_EXPENSES", 180),
    _t12("OTHER_OPEX", "Other Operating Expenses", "OPERATING_EXPENSES", 190),
    _t12("TOTAL_OPEX", "Total Operating Expenses", "OPERATING_EXPENSES", 200, "T12_TOTAL_OPEX", is_total=True),
    _t12("NOI", "Net Operating Income (NOI)", "NET_OPERATING_INCOME", 300, "T12_NOI", is_total=True),
    _t12("REPLACEMENT_RESERVES", "Replacement Reserves", "CAPEX_RESERVES", 410),
    _t12("CAPEX", "CapEx", "CAPEX_RESERVES", 420),
    _t12("TOTAL_CAPEX", "Total CapEx / Reserves", "CAPEX_RESERVES", 430, "T12_TOTAL_CAPEX", is_total=True),
    _t12("NET_CASH_FLOW_BEFORE_DEBT", "Net Cash Flow Before Debt", "CASH_FLOW", 510,
         "T12_NET_CASH_FLOW_BEFORE_DEBT", sign=SIGN_PAREN),
    _t12("DEBT_SERVICE", "Debt Service", "CASH_FLOW", 520),
    _t12("CASH_FLOW_AFTER_DEBT", "Cash Flow After Debt", "CASH_FLOW", 530, sign=SIGN_PAREN),
    _t12("OPEX_RATIO", "OpEx Ratio", "RATIOS", 610, "T12_OPEX_RATIO", precision=3, is_percent=True),
    _t12("NOI_MARGIN", "NOI Margin", "RATIOS", 620, "T12_NOI_MARGIN", precision=3, is_percent=True),
]

# Income statement lines take precedence over tax return lines (see fact_types order).
T12_FACT_KEY_MAP = {
    ("INCOME_STATEMENT", "EFFECTIVE_GROSS_INCOME"): "GROSS_RENTAL_INCOME",
    ("INCOME_STATEMENT", "TOTAL_OPERATING_EXPENSES"): "TOTAL_OPEX",
    ("INCOME_STATEMENT", "NET_OPERATING_INCOME"): "NOI",
    ("INCOME_STATEMENT", "CAPITAL_EXPENDITURES"): "CAPEX",
    ("TAX_RETURN", "GROSS_RECEIPTS"): "GROSS_RENTAL_INCOME",
    ("TAX_RETURN", "TOTAL_INCOME"): "GROSS_RENTAL_INCOME",
    ("TAX_RETURN", "OFFICER_COMPENSATION"): "PAYROLL",
    ("TAX_RETURN", "SALARIES_WAGES"): "PAYROLL",
    ("TAX_RETURN", "INSURANCE_EXPENSE"): "INSURANCE",
    ("TAX_RETURN", "TAXES_LICENSES"): "REAL_ESTATE_TAXES",
    ("TAX_RETURN", "RENT_EXPENSE"): "OTHER_OPEX",
    ("TAX_RETURN", "OTHER_DEDUCTIONS"): "OTHER_OPEX",
    # Includes depreciation and interest, so only a stand-in for NOI.
    ("TAX_RETURN", "NET_INCOME"): "NOI",
}


# Personal financial statement

PFS_FORMULAS = [
    Formula("PFS_TOTAL_ASSETS",
            "PFS_CASH + PFS_SECURITIES + PFS_REAL_ESTATE + PFS_BUSINESS_INTERESTS + PFS_RETIREMENT"
            " + PFS_OTHER_ASSETS"),
    Formula("PFS_TOTAL_LIABILITIES",
            "PFS_MORTGAGES + PFS_INSTALLMENT_DEBT + PFS_CREDIT_CARDS + PFS_CONTINGENT + PFS_OTHER_LIABILITIES"),
    Formula("PFS_NET_WORTH", metric_id="PFS_NET_WORTH"),
]

PFS_ROWS = [
    SpreadRow("PFS_CASH", "Cash & Savings", "ASSETS", 10),
    SpreadRow("PFS_SECURITIES", "Stocks, Bonds & Securities", "ASSETS", 20),
    SpreadRow("PFS_REAL_ESTATE", "Real Estate (Market Value)", "ASSETS", 30),
    SpreadRow("PFS_BUSINESS_INTERESTS", "Business Interests", "ASSETS", 40),
    SpreadRow("PFS_RETIREMENT", "Retirement Accounts", "ASSETS", 50),
    SpreadRow("PFS_OTHER_ASSETS", "Other Assets", "ASSETS", 60),
    SpreadRow("PFS_TOTAL_ASSETS", "Total Assets", "ASSETS", 70, formula_id="PFS_TOTAL_ASSETS", is_total=True),
    SpreadRow("PFS_MORTGAGES", "Mortgages", "LIABILITIES", 110),
    SpreadRow("PFS_INSTALLMENT_DEBT", "Installment Debt", "LIABILITIES", 120),
    SpreadRow("PFS_CREDIT_CARDS", "Credit Card Balances", "LIABILITIES", 130),
    SpreadRow("PFS_CONTINGENT", "Contingent Liabilities", "LIABILITIES", 140),
    SpreadRow("PFS_OTHER_LIABILITIES", "Other Liabilities", "LIABILITIES", 150),
    SpreadRow("PFS_TOTAL_LIABILITIES", "Total Liabilities", "LIABILITIES", 160,
              formula_id="PFS_TOTAL_LIABILITIES", is_total=True),
    SpreadRow("PFS_NET_WORTH", "Net Worth", "EQUITY", 200, formula_id="PFS_NET_WORTH", is_total=True,
              sign=SIGN_PAREN),
    SpreadRow("PFS_ANNUAL_DEBT_SERVICE", "Annual Debt Service", "OBLIGATIONS", 310),
    SpreadRow("PFS_LIVING_EXPENSES", "Annual Living Expenses", "OBLIGATIONS", 320),
]


BALANCE_SHEET_TEMPLATE = build_template(
    spread_type="BALANCE_SHEET",
    title="Balance Sheet",
    template_id="canonical_balance_sheet_v1",
    rows=BALANCE_SHEET_ROWS,
    formulas=BALANCE_SHEET_FORMULAS,
    schema_version=2,
    column_mode=COLUMNS_BY_AS_OF,
    fact_types=["BALANCE_SHEET"],
    prerequisites=Prerequisites(fact_types=("BALANCE_SHEET",), note="Needs balance sheet facts"),
)

STANDARD_TEMPLATE = build_template(
    spread_type="STANDARD",
    title="Financial Analysis",
    template_id="standard",
    rows=STANDARD_ROWS,
    formulas=STANDARD_FORMULAS,
    schema_version=3,
    column_mode=COLUMNS_BY_PERIOD,
    section_headers=True,
)

T12_TEMPLATE = build_template(
    spread_type="T12",
    title="Operating Performance",
    template_id="canonical_t12_v3",
    rows=T12_ROWS,
    formulas=T12_FORMULAS,
    version=3,
    schema_version=3,
    column_mode=COLUMNS_BY_PERIOD,
    fact_types=["INCOME_STATEMENT", "TAX_RETURN"],
    fact_key_map=T12_FACT_KEY_MAP,
    prerequisites=Prerequisites(
        fact_types=("INCOME_STATEMENT", "TAX_RETURN"),
        note="Needs operating performance facts from business tax returns or income statements",
    ),
)

RENT_ROLL_TEMPLATE = build_template(
    spread_type="RENT_ROLL",
    title="Rent Roll (Canonical)",
    template_id="canonical_rent_roll_v1",
    rows=[],
    formulas=[],
    version=3,
    schema_version=3,
    source=SOURCE_RENT_ROLL,
    prerequisites=Prerequisites(rent_roll_rows=True, note="Needs extracted rent roll unit rows"),
)

PERSONAL_FINANCIAL_STATEMENT_TEMPLATE = build_template(
    spread_type="PERSONAL_FINANCIAL_STATEMENT",
    title="Personal Financial Statement",
    template_id="personal_financial_statement",
    rows=PFS_ROWS,
    formulas=PFS_FORMULAS,
    schema_version=2,
    column_mode=COLUMNS_BY_AS_OF,
    fact_types=["PERSONAL_FINANCIAL_STATEMENT"],
    prerequisites=Prerequisites(
        fact_types=("PERSONAL_FINANCIAL_STATEMENT",),
        note="Needs a guarantor's personal financial statement",
    ),
)

TEMPLATES: Dict[str, SpreadTemplate] = {
    template.spread_type: template
    for template in (
        BALANCE_SHEET_TEMPLATE,
        STANDARD_TEMPLATE,
        T12_TEMPLATE,
        RENT_ROLL_TEMPLATE,
        PERSONAL_FINANCIAL_STATEMENT_TEMPLATE,
    )
}

SPREAD_TYPES = tuple(TEMPLATES)


def get_template(spread_type: str) -> SpreadTemplate:
    template = TEMPLATES.get(str(spread_type).upper()) if spread_type else None
    if template is None:
        raise UnknownSpreadTypeError(str(spread_type))
    return template
