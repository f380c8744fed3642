"""
Custom exceptions for LoanSpread.

Provides a hierarchy of exceptions with error codes for consistent error handling.
"""
from typing import Optional, Dict, Any


class LoanSpreadError(Exception):
    """
    Base exception for all LoanSpread errors.

    Attributes:
        error_code: Unique error code (e.g., LSP-001)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "LSP-000"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# Document & Extraction Errors (LSP-1XX)
class ExtractionError(LoanSpreadError):
    """Error while parsing a document into line items."""
    error_code = "LSP-100"
    http_status = 422

    def __init__(self, message: str = "Failed to extract facts from document", **kwargs):
        super().__init__(message, **kwargs)


class DocumentNotFoundError(LoanSpreadError):
    """Source document not found in database."""
    error_code = "LSP-101"
    http_status = 404

    def __init__(self, document_id: str, **kwargs):
        message = f"Document {document_id} not found"
        super().__init__(message, details={"document_id": str(document_id)}, **kwargs)


class LegacyResponseError(ExtractionError):
    """Legacy extraction service returned something outside the schema."""
    error_code = "LSP-102"
    http_status = 502

    def __init__(self, message: str = "Legacy extraction response failed validation", **kwargs):
        super().__init__(message, **kwargs)


# Fact & Metric Errors (LSP-2XX)
class FactWriteError(LoanSpreadError):
    """A fact could not be persisted."""
    error_code = "LSP-200"
    http_status = 500

    def __init__(self, message: str = "Failed to write fact", **kwargs):
        super().__init__(message, **kwargs)


class UnknownMetricError(LoanSpreadError):
    """Metric name has no registered resolution chain."""
    error_code = "LSP-201"
    http_status = 400

    def __init__(self, metric: str, **kwargs):
        message = f"Unknown metric '{metric}'"
        super().__init__(message, details={"metric": metric}, **kwargs)


# Spread & Formula Errors (LSP-3XX)
class FormulaRegistryError(LoanSpreadError):
    """Row registry is inconsistent (forward reference or cycle)."""
    error_code = "LSP-300"
    http_status = 500

    def __init__(self, message: str = "Invalid row registry", **kwargs):
        super().__init__(message, **kwargs)


class UnknownFormulaError(LoanSpreadError):
    """Formula id is not registered."""
    error_code = "LSP-301"
    http_status = 500

    def __init__(self, formula_id: str, **kwargs):
        message = f"Formula {formula_id} is not registered"
        super().__init__(message, details={"formula_id": formula_id}, **kwargs)


class UnknownSpreadTypeError(LoanSpreadError):
    """Spread type has no registered template."""
    error_code = "LSP-302"
    http_status = 400

    def __init__(self, spread_type: str, **kwargs):
        message = f"Spread type {spread_type} is not registered"
        super().__init__(message, details={"spread_type": spread_type}, **kwargs)


class SpreadNotFoundError(LoanSpreadError):
    """No stored spread of this type for the case."""
    error_code = "LSP-303"
    http_status = 404

    def __init__(self, case_id: str, spread_type: str, **kwargs):
        message = f"No {spread_type} spread for case {case_id}"
        super().__init__(message, details={"case_id": case_id, "spread_type": spread_type}, **kwargs)


# Job Errors (LSP-4XX)
class JobNotFoundError(LoanSpreadError):
    """Job not found."""
    error_code = "LSP-400"
    http_status = 404

    def __init__(self, job_id: str, **kwargs):
        message = f"Job {job_id} not found"
        super().__init__(message, details={"job_id": str(job_id)}, **kwargs)


class LeaseLostError(LoanSpreadError):
    """Worker no longer holds the lease on a job."""
    error_code = "LSP-401"
    http_status = 409

    def __init__(self, job_id: str, owner: str, **kwargs):
        message = f"Lease on job {job_id} is no longer held by {owner}"
        super().__init__(message, details={"job_id": str(job_id), "owner": owner}, **kwargs)


# Audit & Integrity Errors (LSP-5XX)
class DecisionNotFoundError(LoanSpreadError):
    """No credit decision recorded for the case."""
    error_code = "LSP-500"
    http_status = 404

    def __init__(self, case_id: str, **kwargs):
        message = f"No credit decision found for case {case_id}"
        super().__init__(message, details={"case_id": str(case_id)}, **kwargs)


class SnapshotBuildError(LoanSpreadError):
    """Decision snapshot could not be assembled."""
    error_code = "LSP-501"
    http_status = 500

    def __init__(self, message: str = "Failed to build decision snapshot", **kwargs):
        super().__init__(message, **kwargs)


class ManifestError(LoanSpreadError):
    """Artifact manifest could not be built."""
    error_code = "LSP-502"
    http_status = 400

    def __init__(self, message: str = "Invalid artifact set", **kwargs):
        super().__init__(message, **kwargs)


# Access Errors (LSP-6XX)
class AccessDeniedError(LoanSpreadError):
    """Caller is not allowed to perform this action."""
    error_code = "LSP-600"
    http_status = 403

    def __init__(self, message: str = "You do not have permission to perform this action", **kwargs):
        super().__init__(message, **kwargs)


class CapabilityDeniedError(AccessDeniedError):
    """Resolved mode lacks the required capability."""
    error_code = "LSP-601"
    http_status = 403

    def __init__(self, capability: str, mode: str, **kwargs):
        message = f"Mode {mode} does not allow {capability}"
        super().__init__(message, details={"capability": capability, "mode": mode}, **kwargs)


class GrantScopeError(AccessDeniedError):
    """Examiner grant does not cover the request."""
    error_code = "LSP-602"
    http_status = 403

    def __init__(self, reason: str, **kwargs):
        message = f"Examiner grant denied: {reason}"
        super().__init__(message, details={"reason": reason}, **kwargs)


# Validation Errors (LSP-7XX)
class ValidationError(LoanSpreadError):
    """Input validation failed."""
    error_code = "LSP-700"
    http_status = 400

    def __init__(self, message: str = "Validation failed", errors: list = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["errors"] = errors or []
        super().__init__(message, details=details, **kwargs)


# Database Errors (LSP-8XX)
class DatabaseError(LoanSpreadError):
    """Database operation failed."""
    error_code = "LSP-800"
    http_status = 500

    def __init__(self, message: str = "Database operation failed", **kwargs):
        super().__init__(message, **kwargs)


# External Service Errors (LSP-9XX)
class ExternalServiceError(LoanSpreadError):
    """External service call failed."""
    error_code = "LSP-900"
    http_status = 502

    def __init__(self, service_name: str, message: str = None, **kwargs):
        msg = message or f"External service '{service_name}' is unavailable"
        super().__init__(msg, details={"service": service_name}, **kwargs)
