"""
Pydantic response schemas for the MVR Exchange API

Request bodies are validated by ``validation.py`` so that error messages and
their order match the ingestion rules; these models describe the responses.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field


class IngestionResponse(BaseModel):
    """Response schema for single-record ingestion."""
    outcome: str = Field(..., description="NEW, UPDATED or SKIPPED")
    message: str = Field(..., description="Human-readable outcome")
    drivers_license_number: Optional[str] = Field(default=None, description="License number of the subject")
    mvr_id: Optional[int] = Field(default=None, description="Stored record (current record when SKIPPED)")
    subject_id: Optional[int] = Field(default=None, description="Subject identifier")


class BatchItemResponse(IngestionResponse):
    """Outcome of one batch element."""
    index: int = Field(..., ge=0, description="Position in batch_mvrs")


class BatchSummary(BaseModel):
    total: int = Field(..., ge=0)
    successful: int = Field(..., ge=0)
    new_records: int = Field(..., ge=0)
    updated_records: int = Field(..., ge=0)
    skipped_records: int = Field(..., ge=0)
    failed_records: int = Field(..., ge=0)


class BatchResponse(BaseModel):
    """Response schema for batch ingestion."""
    committed: bool = Field(..., description="Whether the batch was stored")
    summary: BatchSummary
    results: List[BatchItemResponse] = Field(default_factory=list, description="Per-element outcomes")


class MVRResponse(BaseModel):
    """Response schema for retrieval: the subject's current record aggregate."""
    subject: Dict[str, Any] = Field(..., description="Subject identity fields")
    mvr: Dict[str, Any] = Field(..., description="Current MVR record")
    license_info: Optional[Dict[str, Any]] = Field(default=None, description="License details")
    violations: List[Dict[str, Any]] = Field(default_factory=list, description="Traffic violations, newest first")
    withdrawals: List[Dict[str, Any]] = Field(default_factory=list, description="Withdrawals, newest first")
    accidents: List[Dict[str, Any]] = Field(default_factory=list, description="Accident reports, newest first")
    crimes: List[Dict[str, Any]] = Field(default_factory=list, description="Traffic crimes, newest first")
    transaction: Optional[Dict[str, Any]] = Field(default=None, description="Seller/buyer transaction")
    seller_company_id: str = Field(..., description="Company that supplied the record")


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database_connected: bool = Field(..., description="Whether the database answered")
    latency_ms: float = Field(default=0.0, ge=0, description="Database round-trip time")
    pool: Dict[str, int] = Field(default_factory=dict, description="Connection pool statistics")
    version: str = Field(..., description="Service version")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    error: Optional[str] = Field(default=None, description="Health check failure reason")


class FieldErrorDetail(BaseModel):
    field: str
    message: str


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    details: Optional[List[FieldErrorDetail]] = Field(default=None, description="Every failing field")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail


class BatchErrorResponse(ErrorResponse):
    """Error response for a rolled-back batch, with per-element outcomes."""
    committed: bool = False
    summary: BatchSummary
    results: List[BatchItemResponse] = Field(default_factory=list)
