"""
Pydantic schemas for data validation and serialization.

Schemas:
    records: Typed records produced from ERP rows (one per synced table)
    api: Trigger, health and run history request/response schemas

Usage:
    from schemas.records import CustomerRecord, EtaLineRecord
    from schemas.api import SyncResponse, HealthCheckResponse

Validation:
    Remote rows are validated at the boundary; a row failing validation
    is counted as rejected and never reaches the store.
"""

__all__ = [
    "CustomerRecord",
    "EtaLineRecord",
    "PaymentInstrumentRecord",
    "CustomerIdentifierRecord",
    "InvoiceHeaderRecord",
    "InvoiceLineRecord",
    "InvoicePaymentRecord",
    "ExportManifest",
    "SyncResponse",
    "ErrorResponse",
    "HealthCheckResponse",
    "RunsResponse",
]
