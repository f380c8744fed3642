"""Personal financial statement (SBA Form 413 and bank PFS forms) extractor."""
from loanspread.services.extraction.extractors.base import DocumentExtractor

PFS_KEYS = frozenset([
    "PFS_CASH", "PFS_SECURITIES", "PFS_REAL_ESTATE", "PFS_BUSINESS_INTERESTS",
    "PFS_RETIREMENT", "PFS_OTHER_ASSETS", "PFS_TOTAL_ASSETS",
    "PFS_MORTGAGES", "PFS_INSTALLMENT_DEBT", "PFS_CREDIT_CARDS",
    "PFS_CONTINGENT", "PFS_OTHER_LIABILITIES", "PFS_TOTAL_LIABILITIES",
    "PFS_NET_WORTH",
    "PFS_ANNUAL_DEBT_SERVICE", "PFS_LIVING_EXPENSES",
])

LABEL_PATTERNS = {
    "PFS_CASH": [
        r"cash\s+(?:and\s+)?short[\s-]?term\s+invest",
        r"cash\s+(?:in\s+)?banks?",
        r"cash\s+(?:and\s+)?(?:cash\s+)?equivalents?",
        r"checking\s+(?:and\s+)?savings",
        r"deposits?\s+(?:in\s+)?(?:financial\s+)?institutions?",
        r"liquid\s+assets?",
    ],
    "PFS_SECURITIES": [
        r"stocks?\s*(?:&|and)\s*bonds?",
        r"(?:other\s+)?marketable\s+securities",
        r"stocks?,?\s+bonds?\s+(?:and\s+)?(?:other\s+)?securities",
        r"brokerage\s+accounts?",
        r"investment\s+accounts?",
    ],
    "PFS_REAL_ESTATE": [
        r"real\s+estate[\s-]+(?:personal\s+)?residen",
        r"real\s+estate[\s-]+invest",
        r"real\s+estate\s+(?:owned|market\s+value)",
        r"(?:market\s+)?value\s+of\s+(?:real\s+)?(?:estate|properties)",
        r"property\s+values?",
    ],
    "PFS_BUSINESS_INTERESTS": [
        r"business\s+(?:ownership|interests?|equity)",
        r"(?:general|limited)\s+partnership\s+interests?",
        r"partnership\s+(?:interests?|equity)",
        r"LLC\s+(?:interests?|equity)",
    ],
    "PFS_RETIREMENT": [
        r"retirement\s+(?:accounts?|funds?)",
        r"401[\s(]?k\)?",
        r"\bIRA\b|pension",
    ],
    "PFS_OTHER_ASSETS": [
        r"other\s+assets?",
        r"auto(?:mobile)?s?\s+(?:value|owned)?",
        r"life\s+insurance\s+(?:cash\s+)?(?:surrender\s+)?value",
        r"cash\s+surrender\s+value",
        r"personal\s+property",
        r"notes?\s+receivable",
    ],
    "PFS_TOTAL_ASSETS": [r"total\s+assets"],
    "PFS_MORTGAGES": [
        r"mortgages?\s+(?:&|and)\s+obligations?\s+due",
        r"mortgage(?:s)?\s+(?:payable|balance|owed|on\s+real\s+estate)",
        r"(?:home|real\s+estate)\s+(?:loan|mortgage)\s+balance",
    ],
    "PFS_INSTALLMENT_DEBT": [
        r"installment\s+(?:debt|loans?|accounts?)",
        r"auto\s+loans?",
        r"student\s+loans?",
        r"notes?\s+(?:&|and)\s+accounts?\s+payable",
    ],
    "PFS_CREDIT_CARDS": [
        r"(?:outstanding\s+)?credit\s+card\s+balance",
        r"credit\s+card\s+(?:balance|debt)",
        r"revolving\s+(?:debt|credit)",
    ],
    "PFS_CONTINGENT": [
        r"contingent\s+(?:liabilit|obligation)",
        r"co[\s-]?signed?\s+(?:loan|obligation)",
        r"guarantee(?:s|d)?\s+(?:liabilit|obligation)",
    ],
    "PFS_OTHER_LIABILITIES": [
        r"other\s+liabilit",
        r"other\s+(?:debts?|obligations?)",
        r"tax(?:es)?\s+(?:owed|payable)",
    ],
    "PFS_TOTAL_LIABILITIES": [r"total\s+liabilit"],
    "PFS_NET_WORTH": [r"net\s+worth", r"total\s+equity"],
    "PFS_ANNUAL_DEBT_SERVICE": [
        r"annual\s+(?:debt\s+)?(?:service|payments?)",
        r"total\s+(?:annual\s+)?(?:debt\s+)?(?:service|payments?)",
        r"(?:monthly|annual)\s+(?:loan|debt)\s+payments?",
        r"loan\s+payments?\s+(?:including|incl)",
    ],
    "PFS_LIVING_EXPENSES": [
        r"(?:annual\s+)?living\s+(?:expenses?|costs?)",
        r"general\s+living\s+(?:expenses?|costs?)",
        r"(?:annual\s+)?household\s+(?:expenses?|costs?)",
        r"personal\s+(?:expenses?|costs?|obligations?)",
        r"total\s+expenses",
    ],
}

ENTITY_MAP = {
    "cash": "PFS_CASH",
    "cash_in_banks": "PFS_CASH",
    "securities": "PFS_SECURITIES",
    "stocks_bonds": "PFS_SECURITIES",
    "real_estate": "PFS_REAL_ESTATE",
    "real_estate_owned": "PFS_REAL_ESTATE",
    "business_interests": "PFS_BUSINESS_INTERESTS",
    "retirement": "PFS_RETIREMENT",
    "retirement_accounts": "PFS_RETIREMENT",
    "other_assets": "PFS_OTHER_ASSETS",
    "total_assets": "PFS_TOTAL_ASSETS",
    "mortgages": "PFS_MORTGAGES",
    "mortgage_payable": "PFS_MORTGAGES",
    "installment_debt": "PFS_INSTALLMENT_DEBT",
    "credit_cards": "PFS_CREDIT_CARDS",
    "contingent_liabilities": "PFS_CONTINGENT",
    "other_liabilities": "PFS_OTHER_LIABILITIES",
    "total_liabilities": "PFS_TOTAL_LIABILITIES",
    "net_worth": "PFS_NET_WORTH",
}

HEADLINE_CONFIDENCE = 0.50
DETAIL_CONFIDENCE = 0.45
MIN_CROSS_LINE_CONFIDENCE = 0.40


class PersonalFinancialStatementExtractor(DocumentExtractor):
    fact_type = "PERSONAL_FINANCIAL_STATEMENT"
    name = "pfsExtractor"
    valid_keys = PFS_KEYS
    entity_map = ENTITY_MAP
    label_patterns = LABEL_PATTERNS
    entity_default_confidence = 0.65
    legacy_prompt = (
        "You are a credit analyst reviewing a guarantor's personal financial statement. "
        "Extract asset, liability, net worth and annual obligation totals.\n"
        "Use only these keys: " + ", ".join(sorted(PFS_KEYS)) + ".\n"
        'Return JSON: {"line_items": [{"key": "PFS_NET_WORTH", "value": 1234.0, '
        '"period": "2024-03-31", "confidence": 0.9}]}. Omit items you cannot find.'
    )

    def text_confidences(self, fact_key: str):
        if fact_key.startswith("PFS_TOTAL") or fact_key == "PFS_NET_WORTH":
            same_line = HEADLINE_CONFIDENCE
        else:
            same_line = DETAIL_CONFIDENCE
        return same_line, max(MIN_CROSS_LINE_CONFIDENCE, round(same_line - 0.05, 2))
