"""Exception taxonomy for the production event pipeline."""


class PipelineError(Exception):
    """Base class for ingestion/ledger pipeline failures."""


class InvalidRequest(PipelineError, ValueError):
    """Malformed device payload. The device must resend a corrected request."""


class PersistenceFailure(PipelineError):
    """The production log batch could not be made durable. Caller must retry."""


class ReconciliationFailure(PipelineError):
    """Writing a ledger entry failed. The log row stays durable and is swept later."""
