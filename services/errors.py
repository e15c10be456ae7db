"""Billing error hierarchy.

Route handlers map these to JSON responses (see ``app.py``):
``NotFound`` -> 404, ``ValidationError`` -> 400,
``ExternalServiceError`` -> 502, ``PersistenceError`` -> 500.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing failures."""

    status_code = 500
    error_type = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(BillingError):
    status_code = 404
    error_type = "not_found"


class ValidationError(BillingError):
    status_code = 400
    error_type = "validation_error"


class ExternalServiceError(BillingError):
    status_code = 502
    error_type = "external_service_error"


class PersistenceError(BillingError):
    status_code = 500
    error_type = "persistence_error"
