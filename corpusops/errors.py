from __future__ import annotations

from typing import Optional


class CorpusOpsError(Exception):
    code = "CORPUS_OPS_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class SafetyLockError(CorpusOpsError):
    """Confirmation token does not match the live target."""

    code = "SAFETY_LOCK"


class ProviderError(CorpusOpsError):
    """Final logical error from the keyword-data provider (not retried)."""

    code = "DFS_ERROR"

    def __init__(self, kind: str, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class RateLimitExhaustedError(ProviderError):
    code = "DFS_RATE_LIMIT"


class ProviderUnavailableError(ProviderError):
    code = "DFS_UNAVAILABLE"


class BatchCommitError(CorpusOpsError):
    code = "BATCH_COMMIT_FAILURE"
    retryable = True


class StoreUnavailableError(CorpusOpsError):
    code = "DB_INIT_FAIL"


class AuditBlockedError(CorpusOpsError):
    code = "AUDIT_INTERNAL_ERROR"


class JobStateError(CorpusOpsError):
    code = "JOB_STATE"


class JobStoppedError(CorpusOpsError):
    code = "STOPPED"


# Conditions of the surrounding infrastructure rather than of one record
INFRASTRUCTURE_ERRORS = (RateLimitExhaustedError, ProviderUnavailableError, StoreUnavailableError)
