"""
Source document model.

Holds OCR text and the optional structured-field blob a document-understanding
service produced for an uploaded loan document.
"""
import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow


class DocumentStatus(str, enum.Enum):
    """Document extraction status."""

    PENDING = "pending"
    EXTRACTED = "extracted"
    FAILED = "failed"


class SourceDocument(Base):
    """
    SQLAlchemy model for an uploaded loan document.

    Attributes:
        id: Unique identifier (UUID).
        tenant_id: Owning bank/tenant.
        case_id: Loan case (deal) the document belongs to.
        document_type: Classification stamped by the classifier, if any.
        doc_type_hint: Caller-supplied type used when classification is absent.
        ocr_text: Plain OCR text.
        structured_fields: Opaque JSON from a document-understanding service.
        sha256: Hash of the original file bytes.
        tax_year: Year hint for tax documents.
        status: Current extraction status.
    """

    __tablename__ = "source_documents"

    id: uuid.UUID = Column(UUID(), primary_key=True, default=uuid.uuid4, index=True)
    tenant_id: str = Column(String(64), nullable=False, index=True)
    case_id: str = Column(String(64), nullable=False, index=True)
    filename: str = Column(String(255), nullable=False, default="")
    document_type: Optional[str] = Column(String(64), nullable=True)
    doc_type_hint: Optional[str] = Column(String(64), nullable=True)
    ocr_text: str = Column(Text, nullable=False, default="")
    structured_fields = Column(JSONType, nullable=True)
    sha256: Optional[str] = Column(String(64), nullable=True, index=True)
    tax_year: Optional[int] = Column(Integer, nullable=True)
    status: DocumentStatus = Column(Enum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False)
    error_message: Optional[str] = Column(Text, nullable=True)
    created_at: datetime = Column(DateTime, default=utcnow, nullable=False)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SourceDocument(id={self.id}, case_id='{self.case_id}', type={self.document_type})>"
