"""
Error taxonomy for the aggregation core.

Duplicate raw events are not errors and never surface here. Input validation
belongs to the gateways (pydantic ``ValidationError``) and never reaches the
engine either.
"""


class OutageError(Exception):
    """Base class for failures raised by the outage store."""


class TransactionConflict(OutageError):
    """The store aborted the transaction to keep it serializable. Safe to retry."""


class PersistenceError(OutageError):
    """Any other store failure. Fatal for the current call."""


class PublishError(OutageError):
    """The broker did not accept an ingest event."""
