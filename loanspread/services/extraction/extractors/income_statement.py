"""
Income statement / operating statement extractor.

Covers both general business P&L lines and commercial real estate operating
statements (T12s). When neither structured entities nor the fixed label
patterns find anything, every line carrying an amount is matched against a
dictionary of P&L label aliases.
"""
import re
from typing import List, Optional

from loanspread.services.extraction.extractors.base import (
    PATH_GENERIC_SCAN,
    PATH_TEXT,
    DocumentExtractor,
    ExtractionContext,
    ExtractedLineItem,
    ExtractorOutput,
)
from loanspread.services.extraction.text_patterns import AMOUNT_TOKEN, parse_money

INCOME_STATEMENT_KEYS = frozenset([
    # CRE
    "GROSS_RENTAL_INCOME", "VACANCY_CONCESSIONS", "OTHER_INCOME",
    "REPAIRS_MAINTENANCE", "UTILITIES", "PROPERTY_MANAGEMENT", "REAL_ESTATE_TAXES",
    "INSURANCE", "PAYROLL", "MARKETING", "PROFESSIONAL_FEES", "OTHER_OPEX",
    "DEPRECIATION", "AMORTIZATION", "DEBT_SERVICE", "CAPITAL_EXPENDITURES",
    "EFFECTIVE_GROSS_INCOME", "TOTAL_OPERATING_EXPENSES", "NET_OPERATING_INCOME", "NET_INCOME",
    # General business
    "TOTAL_REVENUE", "COST_OF_GOODS_SOLD", "GROSS_PROFIT", "SELLING_GENERAL_ADMIN",
    "OPERATING_INCOME", "EBITDA",
])

# General P&L lines come first; they are the more common layout.
LABEL_PATTERNS = {
    "TOTAL_REVENUE": [
        r"total\s+(?:sales\s+)?revenue|(?:net|gross)\s+(?:sales|revenue)|total\s+sales|service\s+(?:income|revenue)|fee\s+income"
    ],
    "COST_OF_GOODS_SOLD": [r"cost\s+of\s+(?:goods\s+)?sold|\bCOGS\b|(?:total\s+)?cost\s+of\s+(?:sales|revenue)|direct\s+costs?"],
    "GROSS_PROFIT": [r"gross\s+(?:profit|margin)"],
    "SELLING_GENERAL_ADMIN": [r"selling[\s,]+general\s+(?:&|and)\s+admin|\bSG&?A\b|total\s+general\s+and\s+admin"],
    "OPERATING_INCOME": [r"(?:income|profit|earnings)\s+from\s+operations|operating\s+(?:income|profit|earnings)"],
    "EBITDA": [r"\bEBITDA\b"],
    "GROSS_RENTAL_INCOME": [r"gross\s+(?:rental\s+)?income|rental\s+revenue|total\s+rental\s+income"],
    "VACANCY_CONCESSIONS": [r"vacancy|concession|loss\s+to\s+lease|vacancy\s+(?:loss|allowance)"],
    "OTHER_INCOME": [r"other\s+income|miscellaneous\s+income|laundry|parking\s+income|late\s+fees"],
    "EFFECTIVE_GROSS_INCOME": [r"effective\s+gross\s+income|\bEGI\b|total\s+income"],
    "REPAIRS_MAINTENANCE": [r"repairs?\s*(?:&|and)?\s*maintenance|R&M|marina\s+svcs"],
    "UTILITIES": [r"utilit(?:y|ies)|electric|\bgas\b|water|sewer|fuel"],
    "PROPERTY_MANAGEMENT": [r"(?:property\s+)?management\s+(?:fee|expense)|management"],
    "REAL_ESTATE_TAXES": [r"real\s+estate\s+tax|property\s+tax|\bRE\s+tax"],
    "INSURANCE": [r"\binsurance\b(?!\s+(?:income|value))"],
    "PAYROLL": [r"payroll(?:\s+(?:&|and)\s+labor)?|salaries|wages|employee\s+(?:cost|expense)"],
    "MARKETING": [r"marketing(?:\s+(?:&|and)\s+advertising)?|advertising"],
    "PROFESSIONAL_FEES": [r"professional\s+fees?|legal|accounting|audit"],
    "OTHER_OPEX": [r"other\s+(?:operating\s+)?expense|general\s+(?:&|and)\s+admin|G&A|miscellaneous\s+expense"],
    "DEPRECIATION": [r"\bdepreciation\b"],
    "AMORTIZATION": [r"\bamortization\b"],
    "DEBT_SERVICE": [r"debt\s+service|mortgage\s+payment|loan\s+payment|interest\s+(?:expense|paid)"],
    "CAPITAL_EXPENDITURES": [r"capital\s+(?:expenditure|improvement)|capex|cap\s+ex"],
    "TOTAL_OPERATING_EXPENSES": [r"total\s+(?:operating\s+)?expenses|total\s+opex"],
    "NET_OPERATING_INCOME": [r"net\s+operating\s+income|\bNOI\b"],
    "NET_INCOME": [r"net\s+(?:income|profit|loss)|bottom\s+line"],
}

ENTITY_MAP = {
    "revenue": "TOTAL_REVENUE",
    "total_revenue": "TOTAL_REVENUE",
    "sales": "TOTAL_REVENUE",
    "total_sales": "TOTAL_REVENUE",
    "net_sales": "TOTAL_REVENUE",
    "cost_of_goods_sold": "COST_OF_GOODS_SOLD",
    "cogs": "COST_OF_GOODS_SOLD",
    "cost_of_sales": "COST_OF_GOODS_SOLD",
    "gross_profit": "GROSS_PROFIT",
    "gross_margin": "GROSS_PROFIT",
    "operating_income": "OPERATING_INCOME",
    "income_from_operations": "OPERATING_INCOME",
    "ebitda": "EBITDA",
    "sga": "SELLING_GENERAL_ADMIN",
    "selling_general_admin": "SELLING_GENERAL_ADMIN",
    "gross_income": "GROSS_RENTAL_INCOME",
    "rental_income": "GROSS_RENTAL_INCOME",
    "total_income": "EFFECTIVE_GROSS_INCOME",
    "vacancy": "VACANCY_CONCESSIONS",
    "other_income": "OTHER_INCOME",
    "repairs": "REPAIRS_MAINTENANCE",
    "maintenance": "REPAIRS_MAINTENANCE",
    "utilities": "UTILITIES",
    "management": "PROPERTY_MANAGEMENT",
    "management_fee": "PROPERTY_MANAGEMENT",
    "property_tax": "REAL_ESTATE_TAXES",
    "taxes": "REAL_ESTATE_TAXES",
    "insurance": "INSURANCE",
    "payroll": "PAYROLL",
    "marketing": "MARKETING",
    "professional_fees": "PROFESSIONAL_FEES",
    "other_expenses": "OTHER_OPEX",
    "depreciation": "DEPRECIATION",
    "amortization": "AMORTIZATION",
    "debt_service": "DEBT_SERVICE",
    "interest": "DEBT_SERVICE",
    "capital_expenditures": "CAPITAL_EXPENDITURES",
    "total_expenses": "TOTAL_OPERATING_EXPENSES",
    "operating_expenses": "TOTAL_OPERATING_EXPENSES",
    "net_operating_income": "NET_OPERATING_INCOME",
    "noi": "NET_OPERATING_INCOME",
    "net_income": "NET_INCOME",
    "net_profit": "NET_INCOME",
}

# (pattern, fact key) pairs for free-form P&L labels, checked in order.
PL_ALIASES = [
    (re.compile(r"^rent\s+roll\b|insurance\s+income", re.IGNORECASE), None),
    (re.compile(r"revenue|sales|gross\s+receipts|fee\s+income|charter", re.IGNORECASE), "TOTAL_REVENUE"),
    (re.compile(r"cost\s+of\s+(?:goods\s+sold|sales)|\bCOGS\b|direct\s+costs?|merchant\s+fees|materials?\s+cost", re.IGNORECASE), "COST_OF_GOODS_SOLD"),
    (re.compile(r"gross\s+(?:profit|margin)", re.IGNORECASE), "GROSS_PROFIT"),
    (re.compile(r"total\s+(?:operating\s+)?expenses", re.IGNORECASE), "TOTAL_OPERATING_EXPENSES"),
    (re.compile(r"payroll|salaries|wages", re.IGNORECASE), "PAYROLL"),
    (re.compile(r"^rent\b|lease\s+expense", re.IGNORECASE), "OTHER_OPEX"),
    (re.compile(r"\binsurance\b", re.IGNORECASE), "INSURANCE"),
    (re.compile(r"repairs?\s*(?:&|and)?\s*maintenance|R&M|marina\s+svcs", re.IGNORECASE), "REPAIRS_MAINTENANCE"),
    (re.compile(r"interest\s+expense|debt\s+service", re.IGNORECASE), "DEBT_SERVICE"),
    (re.compile(r"^depreciation|^amortization", re.IGNORECASE), "DEPRECIATION"),
    (re.compile(r"income\s+before\s+tax|pre[\s-]?tax\s+income|operating\s+income|\bEBT\b", re.IGNORECASE), "OPERATING_INCOME"),
    (re.compile(r"net\s+(?:income|profit|loss)|bottom\s+line", re.IGNORECASE), "NET_INCOME"),
]

MONEY_ON_LINE = re.compile(AMOUNT_TOKEN)
GENERIC_SCAN_CONFIDENCE = 0.45


def normalize_pl_label(label: str) -> Optional[str]:
    """Fact key for a free-form P&L label, or None."""
    label = (label or "").strip()
    if not label:
        return None
    for pattern, fact_key in PL_ALIASES:
        if pattern.search(label):
            return fact_key
    return None


class IncomeStatementExtractor(DocumentExtractor):
    fact_type = "INCOME_STATEMENT"
    name = "incomeStatementExtractor"
    valid_keys = INCOME_STATEMENT_KEYS
    entity_map = ENTITY_MAP
    label_patterns = LABEL_PATTERNS
    entity_default_confidence = 0.7
    same_line_confidence = 0.60
    cross_line_confidence = 0.55
    legacy_prompt = (
        "You are a commercial credit analyst. Extract income statement or operating statement "
        "line items from the document, one entry per period column.\n"
        "Use only these keys: " + ", ".join(sorted(INCOME_STATEMENT_KEYS)) + ".\n"
        'Return JSON: {"line_items": [{"key": "NET_OPERATING_INCOME", "value": 1234.0, '
        '"period": "FY2023", "confidence": 0.9}]}. Omit items you cannot find.'
    )

    def text_fallback(self, ctx: ExtractionContext) -> ExtractorOutput:
        items = self.generic_row_scan(ctx)
        return ExtractorOutput(items=items, path=PATH_GENERIC_SCAN if items else PATH_TEXT)

    def generic_row_scan(self, ctx: ExtractionContext) -> List[ExtractedLineItem]:
        """Match the label in front of every amount against the alias dictionary; first hit per key wins."""
        lines = ctx.ocr_text.split("\n")
        period = self.document_period(ctx)
        items = []
        seen = set()

        for index, line in enumerate(lines):
            match = MONEY_ON_LINE.search(line)
            if not match:
                continue
            value = parse_money(match.group(0))
            if value is None:
                continue

            label = line[:match.start()].strip()
            if len(label) < 4 and index > 0:
                # Amount on its own line; the label is the line above.
                label = lines[index - 1].strip()
            if not label:
                continue

            cleaned = re.sub(r"\(Sch\s+\w+\)", "", re.sub(r"\[.*?\]", "", label), flags=re.IGNORECASE).strip()
            fact_key = normalize_pl_label(cleaned)
            if fact_key is None or fact_key not in self.valid_keys or fact_key in seen:
                continue
            seen.add(fact_key)

            snippet = f"{cleaned} {match.group(0)}".strip()
            items.append(
                self.make_item(ctx, fact_key, value, GENERIC_SCAN_CONFIDENCE, period, snippet, PATH_GENERIC_SCAN)
            )
        return items
