"""Per-document-type extractors."""
from loanspread.services.extraction.extractors.base import (
    DocumentExtractor,
    ExtractedLineItem,
    ExtractionContext,
    ExtractorOutput,
)
from loanspread.services.extraction.extractors.balance_sheet import BalanceSheetExtractor
from loanspread.services.extraction.extractors.income_statement import IncomeStatementExtractor
from loanspread.services.extraction.extractors.personal_financial_statement import (
    PersonalFinancialStatementExtractor,
)
from loanspread.services.extraction.extractors.rent_roll import RentRollExtractor
from loanspread.services.extraction.extractors.tax_return import TaxReturnExtractor

__all__ = [
    "DocumentExtractor",
    "ExtractedLineItem",
    "ExtractionContext",
    "ExtractorOutput",
    "BalanceSheetExtractor",
    "IncomeStatementExtractor",
    "PersonalFinancialStatementExtractor",
    "RentRollExtractor",
    "TaxReturnExtractor",
]
