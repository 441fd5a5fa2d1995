"""
Infrastructure Monitoring Module

Structured logging for the storefront backend:
- JSON log records with correlation IDs and OpenTelemetry trace context
- Masking of passwords, tokens and second-factor codes
"""

from .logging import (
    correlation_context,
    get_correlation_id,
    mask_sensitive_data,
    setup_structured_logging,
    user_context,
)

__all__ = [
    "correlation_context",
    "get_correlation_id",
    "mask_sensitive_data",
    "setup_structured_logging",
    "user_context",
]
