"""Balance sheet extractor."""
from loanspread.services.extraction.extractors.base import DocumentExtractor

BALANCE_SHEET_KEYS = frozenset([
    "CASH_AND_EQUIVALENTS", "ACCOUNTS_RECEIVABLE", "INVENTORY", "PREPAID_EXPENSES",
    "OTHER_CURRENT_ASSETS", "TOTAL_CURRENT_ASSETS",
    "PROPERTY_PLANT_EQUIPMENT", "ACCUMULATED_DEPRECIATION", "NET_FIXED_ASSETS",
    "INVESTMENT_PROPERTIES", "INTANGIBLE_ASSETS", "OTHER_NON_CURRENT_ASSETS",
    "TOTAL_NON_CURRENT_ASSETS", "TOTAL_ASSETS",
    "ACCOUNTS_PAYABLE", "ACCRUED_EXPENSES", "SHORT_TERM_DEBT", "CURRENT_PORTION_LTD",
    "OTHER_CURRENT_LIABILITIES", "TOTAL_CURRENT_LIABILITIES",
    "LONG_TERM_DEBT", "MORTGAGE_PAYABLE", "DEFERRED_TAX_LIABILITY",
    "OTHER_NON_CURRENT_LIABILITIES", "TOTAL_NON_CURRENT_LIABILITIES", "TOTAL_LIABILITIES",
    "COMMON_STOCK", "RETAINED_EARNINGS", "PARTNERS_CAPITAL", "MEMBERS_EQUITY",
    "OTHER_EQUITY", "TOTAL_EQUITY",
    "TOTAL_LIABILITIES_AND_EQUITY",
])

APOSTROPHE = "['’]"

LABEL_PATTERNS = {
    # Current assets
    "CASH_AND_EQUIVALENTS": [
        r"cash\s+(?:and\s+)?(?:cash\s+)?equivalents?|cash\s+(?:and\s+)?short[\s-]?term|cash\s+(?:in\s+)?banks?"
        r"|(?:checking|savings)(?:\s+account)?|current\s+assets?\s*\(cash\)"
        r"|\bcash\b(?!\s+(?:flow|basis|surrender|method|value))"
    ],
    "ACCOUNTS_RECEIVABLE": [r"accounts?\s+receivable|A/R|trade\s+receivable|unpaid\s+.*?(?:income|receivable)\s+owed"],
    "INVENTORY": [r"\binventor(?:y|ies)\b"],
    "PREPAID_EXPENSES": [r"prepaid\s+(?:expense|asset)|pre[\s-]?paid\s+expense|asset\s+pre[\s-]?paid"],
    "OTHER_CURRENT_ASSETS": [r"other\s+current\s+asset|other\s+equipment"],
    "TOTAL_CURRENT_ASSETS": [r"total\s+current\s+asset"],
    # Non-current assets
    "PROPERTY_PLANT_EQUIPMENT": [
        r"property[\s,]+plant\s+(?:&|and)\s+equipment|PP&E|(?:net\s+)?fixed\s+assets?|land\s+(?:&|and)\s+building"
    ],
    "ACCUMULATED_DEPRECIATION": [r"accumulated\s+depreciation|accum\.?\s+depr|\bdepreciation\b"],
    "NET_FIXED_ASSETS": [r"net\s+(?:fixed|property)\s+asset|total\s+fixed\s+asset"],
    "INVESTMENT_PROPERTIES": [r"investment\s+(?:propert|real\s+estate)"],
    "INTANGIBLE_ASSETS": [r"intangible\s+asset|goodwill"],
    "OTHER_NON_CURRENT_ASSETS": [r"other\s+(?:non[\s-]?current|long[\s-]?term)\s+asset"],
    "TOTAL_NON_CURRENT_ASSETS": [r"total\s+(?:non[\s-]?current|long[\s-]?term|fixed)\s+asset"],
    "TOTAL_ASSETS": [r"total\s+assets"],
    # Current liabilities
    "ACCOUNTS_PAYABLE": [r"accounts?\s+payable|A/P|trade\s+payable"],
    "ACCRUED_EXPENSES": [r"accrued\s+(?:expense|liabilit)"],
    "SHORT_TERM_DEBT": [r"short[\s-]?term\s+(?:debt|borrowing|note)|line\s+of\s+credit|\bLOC\b|credit\s+card\s+balance"],
    "CURRENT_PORTION_LTD": [r"current\s+portion\s+(?:of\s+)?(?:long[\s-]?term|LTD)|CPLTD"],
    "OTHER_CURRENT_LIABILITIES": [r"other\s+current\s+liabilit"],
    "TOTAL_CURRENT_LIABILITIES": [r"total\s+current\s+liabilit"],
    # Non-current liabilities
    "LONG_TERM_DEBT": [r"long[\s-]?term\s+(?:debt|borrowing|note)|\bLTD\b|term\s+loan"],
    "MORTGAGE_PAYABLE": [r"mortgage\s+(?:payable|note|loan)"],
    "DEFERRED_TAX_LIABILITY": [r"deferred\s+(?:tax|income\s+tax)\s+liabilit"],
    "OTHER_NON_CURRENT_LIABILITIES": [r"other\s+(?:non[\s-]?current|long[\s-]?term)\s+liabilit"],
    "TOTAL_NON_CURRENT_LIABILITIES": [r"total\s+(?:non[\s-]?current|long[\s-]?term)\s+liabilit"],
    "TOTAL_LIABILITIES": [r"total\s+liabilities(?!\s+(?:and|&))"],
    # Equity
    "COMMON_STOCK": [r"common\s+stock|capital\s+stock|paid[\s-]?in\s+capital"],
    "RETAINED_EARNINGS": [r"retained\s+earnings|accumulated\s+(?:deficit|surplus)"],
    "PARTNERS_CAPITAL": [rf"partners?{APOSTROPHE}?\s+capital|partnership\s+equity"],
    "MEMBERS_EQUITY": [rf"members?{APOSTROPHE}?\s+equity|LLC\s+equity"],
    "OTHER_EQUITY": [r"other\s+equity|treasury\s+stock|additional\s+paid"],
    "TOTAL_EQUITY": [
        rf"total\s+(?:stockholders?{APOSTROPHE}?\s+|owners?{APOSTROPHE}?\s+|partners?{APOSTROPHE}?\s+|members?{APOSTROPHE}?\s+)?equity"
        r"|owners?\s+equity|total\s+(?:net\s+)?worth|total\s+capital"
    ],
    "TOTAL_LIABILITIES_AND_EQUITY": [
        rf"total\s+liabilities\s+(?:and|&)\s+(?:stockholders?{APOSTROPHE}?\s+)?equity"
        r"|total\s+liabilities\s+(?:and|&)\s+(?:net\s+)?worth"
    ],
}

ENTITY_MAP = {
    "cash": "CASH_AND_EQUIVALENTS",
    "cash_equivalents": "CASH_AND_EQUIVALENTS",
    "accounts_receivable": "ACCOUNTS_RECEIVABLE",
    "inventory": "INVENTORY",
    "total_current_assets": "TOTAL_CURRENT_ASSETS",
    "property_plant_equipment": "PROPERTY_PLANT_EQUIPMENT",
    "accumulated_depreciation": "ACCUMULATED_DEPRECIATION",
    "total_assets": "TOTAL_ASSETS",
    "accounts_payable": "ACCOUNTS_PAYABLE",
    "total_current_liabilities": "TOTAL_CURRENT_LIABILITIES",
    "long_term_debt": "LONG_TERM_DEBT",
    "total_liabilities": "TOTAL_LIABILITIES",
    "retained_earnings": "RETAINED_EARNINGS",
    "total_equity": "TOTAL_EQUITY",
    "total_liabilities_equity": "TOTAL_LIABILITIES_AND_EQUITY",
}


class BalanceSheetExtractor(DocumentExtractor):
    fact_type = "BALANCE_SHEET"
    name = "balanceSheetExtractor"
    valid_keys = BALANCE_SHEET_KEYS
    entity_map = ENTITY_MAP
    label_patterns = LABEL_PATTERNS
    entity_default_confidence = 0.7
    same_line_confidence = 0.55
    cross_line_confidence = 0.50
    legacy_prompt = (
        "You are a commercial credit analyst. Extract balance sheet line items from the document.\n"
        "Use only these keys: " + ", ".join(sorted(BALANCE_SHEET_KEYS)) + ".\n"
        'Return JSON: {"line_items": [{"key": "TOTAL_ASSETS", "value": 1234.0, '
        '"period": "2023-12-31", "confidence": 0.9}]}. Omit items you cannot find.'
    )
