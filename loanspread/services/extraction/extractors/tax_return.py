"""
Tax return extractor.

Line patterns depend on the IRS form detected in the text: form-specific
patterns are layered over generic ones, and the first match for a key wins.
Every value is dated to the fiscal year of the return.
"""
from typing import List

from loanspread.services.extraction.extractors.base import (
    PATH_STRUCTURED,
    PATH_TEXT,
    DocumentExtractor,
    ExtractionContext,
    ExtractedLineItem,
    clamp_confidence,
    normalize_field_name,
)
from loanspread.services.extraction.periods import PeriodRange, fiscal_year_period
from loanspread.services.extraction.structured_fields import extract_form_fields
from loanspread.services.extraction.text_patterns import (
    detect_irs_form_type,
    find_labeled_amount,
    parse_money,
    resolve_tax_year,
)

TAX_RETURN_KEYS = frozenset([
    "GROSS_RECEIPTS", "COST_OF_GOODS_SOLD", "GROSS_PROFIT",
    "TOTAL_INCOME", "TOTAL_DEDUCTIONS", "TAXABLE_INCOME", "NET_INCOME", "TAX_LIABILITY",
    "DEPRECIATION", "AMORTIZATION", "DEPLETION",
    "OFFICER_COMPENSATION", "SALARIES_WAGES",
    "INTEREST_EXPENSE", "INTEREST_INCOME",
    "RENTAL_INCOME", "RENTAL_EXPENSES",
    "WAGES_W2", "BUSINESS_INCOME_SCHEDULE_C", "CAPITAL_GAINS",
    "IRA_DISTRIBUTIONS", "SOCIAL_SECURITY",
    "ADJUSTED_GROSS_INCOME", "STANDARD_DEDUCTION", "ITEMIZED_DEDUCTIONS",
    "QUALIFIED_BUSINESS_INCOME_DEDUCTION",
    "ORDINARY_BUSINESS_INCOME", "NET_RENTAL_REAL_ESTATE_INCOME",
    "GUARANTEED_PAYMENTS", "DISTRIBUTIONS",
    "OTHER_INCOME", "OTHER_DEDUCTIONS", "MEALS_ENTERTAINMENT",
    "RENT_EXPENSE", "TAXES_LICENSES", "INSURANCE_EXPENSE",
    "REPAIRS_MAINTENANCE", "ADVERTISING", "PENSION_PROFIT_SHARING",
])

FORM_1040_PATTERNS = [
    ("WAGES_W2", r"line\s+1\b|wages,?\s+salaries"),
    ("INTEREST_INCOME", r"line\s+2b|taxable\s+interest"),
    ("CAPITAL_GAINS", r"line\s+7\b|capital\s+gain"),
    ("BUSINESS_INCOME_SCHEDULE_C", r"line\s+(?:8|12)\b|business\s+income|schedule\s+C\s+(?:net|income)"),
    ("RENTAL_INCOME", r"line\s+(?:5|17)\b|rental.*?income|schedule\s+E"),
    ("SOCIAL_SECURITY", r"line\s+6[ab]|social\s+security"),
    ("IRA_DISTRIBUTIONS", r"line\s+4[ab]|IRA\s+distributions?|pension"),
    ("TOTAL_INCOME", r"line\s+9\b|total\s+income"),
    ("ADJUSTED_GROSS_INCOME", r"line\s+11\b|adjusted\s+gross\s+income|\bAGI\b"),
    ("STANDARD_DEDUCTION", r"line\s+12\b|standard\s+deduction"),
    ("TAXABLE_INCOME", r"line\s+15\b|taxable\s+income"),
    ("TAX_LIABILITY", r"line\s+(?:16|24)\b|total\s+tax|tax\s+(?:liability|owed)"),
]

# Also used for Schedule C, which follows the same layout.
FORM_1120_PATTERNS = [
    ("GROSS_RECEIPTS", r"line\s+1[abc]?\b|gross\s+receipts"),
    ("COST_OF_GOODS_SOLD", r"line\s+2\b|cost\s+of\s+goods\s+sold|\bCOGS\b"),
    ("GROSS_PROFIT", r"line\s+3\b|gross\s+profit"),
    ("OFFICER_COMPENSATION", r"line\s+12\b|officer\s+compensation|compensation\s+of\s+officer"),
    ("SALARIES_WAGES", r"line\s+13\b|salaries\s+(?:and\s+)?wages"),
    ("DEPRECIATION", r"line\s+(?:14|20)\b|depreciation"),
    ("AMORTIZATION", r"amortization"),
    ("INTEREST_EXPENSE", r"line\s+18\b|interest\s+(?:expense|paid|deduction)"),
    ("RENT_EXPENSE", r"line\s+(?:16|17)\b|rents?\s+(?:expense|paid)"),
    ("TAXES_LICENSES", r"line\s+17\b|taxes\s+(?:and\s+)?licenses"),
    ("TOTAL_DEDUCTIONS", r"line\s+27\b|total\s+deductions"),
    ("TAXABLE_INCOME", r"line\s+(?:28|30)\b|taxable\s+income"),
    ("NET_INCOME", r"net\s+income|net\s+profit"),
]

FORM_1065_PATTERNS = [
    ("GROSS_RECEIPTS", r"line\s+1[abc]?\b|gross\s+receipts"),
    ("ORDINARY_BUSINESS_INCOME", r"line\s+22\b|ordinary\s+(?:business\s+)?income"),
    ("NET_RENTAL_REAL_ESTATE_INCOME", r"net\s+rental\s+real\s+estate|rental\s+real\s+estate\s+income"),
    ("GUARANTEED_PAYMENTS", r"guaranteed\s+payments?"),
    ("DEPRECIATION", r"depreciation"),
    ("INTEREST_EXPENSE", r"interest\s+(?:expense|paid|deduction)"),
    ("DISTRIBUTIONS", r"distributions?\s+(?:to|paid)"),
]

GENERIC_PATTERNS = [
    ("GROSS_RECEIPTS", r"gross\s+receipts|gross\s+income|total\s+(?:gross\s+)?revenue"),
    ("COST_OF_GOODS_SOLD", r"cost\s+of\s+goods\s+sold|\bCOGS\b"),
    ("TOTAL_INCOME", r"total\s+income"),
    ("TOTAL_DEDUCTIONS", r"total\s+deductions"),
    ("TAXABLE_INCOME", r"taxable\s+income"),
    ("NET_INCOME", r"net\s+income|net\s+(?:profit|loss)"),
    ("DEPRECIATION", r"\bdepreciation\b"),
    ("AMORTIZATION", r"\bamortization\b"),
    ("OFFICER_COMPENSATION", r"officer\s+compensation"),
    ("INTEREST_EXPENSE", r"interest\s+(?:expense|paid|deduction)"),
    ("SALARIES_WAGES", r"salaries\s+(?:and\s+)?wages"),
    ("RENT_EXPENSE", r"rents?\s+(?:expense|paid)"),
    ("ADJUSTED_GROSS_INCOME", r"adjusted\s+gross\s+income|\bAGI\b"),
    ("TAX_LIABILITY", r"total\s+tax|tax\s+(?:liability|owed)"),
]

FORM_PATTERNS = {
    "1040": FORM_1040_PATTERNS,
    "1120": FORM_1120_PATTERNS,
    "1120S": FORM_1120_PATTERNS,
    "SCHEDULE_C": FORM_1120_PATTERNS,
    "1065": FORM_1065_PATTERNS,
}

ENTITY_MAP = {
    "gross_receipts": "GROSS_RECEIPTS",
    "cost_of_goods_sold": "COST_OF_GOODS_SOLD",
    "gross_profit": "GROSS_PROFIT",
    "total_income": "TOTAL_INCOME",
    "total_deductions": "TOTAL_DEDUCTIONS",
    "taxable_income": "TAXABLE_INCOME",
    "net_income": "NET_INCOME",
    "tax": "TAX_LIABILITY",
    "tax_liability": "TAX_LIABILITY",
    "depreciation": "DEPRECIATION",
    "amortization": "AMORTIZATION",
    "officer_compensation": "OFFICER_COMPENSATION",
    "salaries_wages": "SALARIES_WAGES",
    "interest_expense": "INTEREST_EXPENSE",
    "rent": "RENT_EXPENSE",
    "ordinary_income": "ORDINARY_BUSINESS_INCOME",
    "guaranteed_payments": "GUARANTEED_PAYMENTS",
    "distributions": "DISTRIBUTIONS",
    "wages": "WAGES_W2",
    "adjusted_gross_income": "ADJUSTED_GROSS_INCOME",
    "capital_gains": "CAPITAL_GAINS",
}

FORM_FIELD_DEFAULT_CONFIDENCE = 0.65


def patterns_for_form(form_type: str):
    return FORM_PATTERNS.get(form_type, []) + GENERIC_PATTERNS


class TaxReturnExtractor(DocumentExtractor):
    fact_type = "TAX_RETURN"
    name = "taxReturnExtractor"
    valid_keys = TAX_RETURN_KEYS
    entity_map = ENTITY_MAP
    entity_default_confidence = 0.75
    same_line_confidence = 0.55
    legacy_prompt = (
        "You are a tax analyst reviewing a business or personal federal tax return. "
        "Extract the return's line items for its tax year.\n"
        "Use only these keys: " + ", ".join(sorted(TAX_RETURN_KEYS)) + ".\n"
        'Return JSON: {"line_items": [{"key": "GROSS_RECEIPTS", "value": 1234.0, '
        '"period": "FY2023", "confidence": 0.9}]}. Omit items you cannot find.'
    )

    def document_period(self, ctx: ExtractionContext) -> PeriodRange:
        return fiscal_year_period(resolve_tax_year(ctx.ocr_text, ctx.tax_year))

    def from_structured(self, ctx: ExtractionContext) -> List[ExtractedLineItem]:
        items = super().from_structured(ctx)
        period = self.document_period(ctx)
        found = {item.fact_key for item in items}

        for form_field in extract_form_fields(ctx.structured_fields):
            fact_key = self.entity_map.get(normalize_field_name(form_field.name))
            if fact_key is None or fact_key not in self.valid_keys or fact_key in found:
                continue
            value = parse_money(form_field.value)
            if value is None:
                continue
            found.add(fact_key)
            items.append(
                self.make_item(
                    ctx,
                    fact_key,
                    value,
                    clamp_confidence(form_field.confidence, FORM_FIELD_DEFAULT_CONFIDENCE),
                    period,
                    f"{form_field.name}: {form_field.value}",
                    PATH_STRUCTURED,
                )
            )
        return items

    def from_text(self, ctx: ExtractionContext) -> List[ExtractedLineItem]:
        form_type = detect_irs_form_type(ctx.ocr_text)
        period = self.document_period(ctx)
        items = []
        found = set()

        for fact_key, label in patterns_for_form(form_type):
            if fact_key in found:
                continue
            match = find_labeled_amount(ctx.ocr_text, label)
            if match is None:
                continue
            value, snippet = match
            found.add(fact_key)
            items.append(self.make_item(ctx, fact_key, value, self.same_line_confidence, period, snippet, PATH_TEXT))
        return items
