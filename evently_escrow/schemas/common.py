"""
Common schemas for API responses and error handling.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..config import get_settings
from ..money import format_amount


class ErrorDetail(BaseModel):
    """Schema for detailed error information."""

    error_code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error context")
    suggestions: Optional[List[str]] = Field(None, description="Helpful suggestions for resolving the error")
    retry_after: Optional[int] = Field(None, description="Seconds to wait before retrying")


class ErrorResponse(BaseModel):
    """Schema for API error responses."""

    error: ErrorDetail
    error_id: str
    timestamp: str

    model_config = ConfigDict(json_schema_extra={
        "examples": [
            {
                "error": {
                    "error_code": "ALREADY_PAID",
                    "message": "Account 0xabc already holds a ticket for event 123e4567-e89b-12d3-a456-426614174000",
                    "details": {
                        "event_id": "123e4567-e89b-12d3-a456-426614174000",
                        "account": "0xabc"
                    }
                },
                "error_id": "2f1c6a1e-8c1b-4d0a-9a53-7f7f2b1d4c11",
                "timestamp": "2026-01-01T12:00:00+00:00"
            },
            {
                "error": {
                    "error_code": "BATCH_REJECTED",
                    "message": "Attendance batch for event 123e4567-e89b-12d3-a456-426614174000 rejected: 1 invalid entries",
                    "details": {
                        "event_id": "123e4567-e89b-12d3-a456-426614174000",
                        "rejected": [{"account": "0xdef", "reason": "not_paid"}]
                    },
                    "suggestions": ["Remove the rejected entries and submit the batch again"]
                },
                "error_id": "7d3e0b8e-1f7e-4c55-b0a4-3c3f5d9e2a10",
                "timestamp": "2026-01-01T12:00:00+00:00"
            }
        ]
    })


class SuccessResponse(BaseModel):
    """Schema for simple success responses."""

    message: str = Field(..., description="Success message")
    data: Optional[Dict[str, Any]] = Field(None, description="Additional response data")


class Amount(BaseModel):
    """An amount in minor units together with its display form."""

    minor_units: int = Field(..., ge=0, description="Amount in the currency's smallest unit")
    display: str = Field(..., description="Human readable amount, e.g. '12.500000 USDC'")

    @classmethod
    def of(cls, amount: int, currency: str) -> "Amount":
        decimals = get_settings().currency_decimals
        return cls(minor_units=amount, display=format_amount(amount, decimals, currency))


class HealthStatus(BaseModel):
    """Schema for health check responses."""

    status: str = Field(..., description="Overall health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="Health check timestamp")
    dependencies: Optional[Dict[str, Dict[str, Any]]] = Field(
        None,
        description="Status of service dependencies"
    )
