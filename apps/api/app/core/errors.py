from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base error for workflow sagas, ledger postings and automation runs."""

    code = "engine_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_details(self) -> Any:
        return self.details


class NotFoundError(EngineError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} not found", details={"entity_type": entity_type, "entity_id": str(entity_id)})
        self.entity_type = entity_type
        self.entity_id = entity_id


class RuleValidationError(EngineError):
    """Raised when a rule definition cannot be run (missing trigger, no actions, bad config)."""

    code = "rule_validation_error"
    status_code = 422


class UnknownTriggerTypeError(RuleValidationError):
    code = "unknown_trigger_type"

    def __init__(self, trigger_type: str) -> None:
        super().__init__(f"unknown trigger type: {trigger_type}", details={"trigger_type": trigger_type})
        self.trigger_type = trigger_type


class InvalidStateError(EngineError):
    code = "invalid_state"
    status_code = 409


class StoreError(EngineError):
    code = "store_error"
    status_code = 500


class ConflictError(StoreError):
    """A unique key was taken by a concurrent writer; retrying re-reads the winner."""

    code = "conflict"
    status_code = 409
    retryable = True


class UnavailableError(StoreError):
    """A dependency (database or remote endpoint) timed out or refused the call. Safe to retry."""

    code = "unavailable"
    status_code = 503
    retryable = True


class ExternalCallError(EngineError):
    """A remote endpoint answered, but not with the status the caller needed."""

    code = "external_call_failed"
    status_code = 502

    def __init__(self, url: str, status: int) -> None:
        super().__init__(f"{url} answered with HTTP {status}", details={"url": url, "status": status})
        self.url = url
        self.status = status


class MissingLedgerAccountsError(EngineError):
    code = "missing_ledger_accounts"
    status_code = 422

    def __init__(self, missing_codes: list[str]) -> None:
        super().__init__(
            f"ledger accounts not found: {', '.join(missing_codes)}",
            details={"missing_codes": missing_codes},
        )
        self.missing_codes = missing_codes


class LedgerImbalanceError(EngineError):
    code = "ledger_imbalance"
    status_code = 422


class PartialSagaFailure(EngineError):
    """A step-mode saga failed after some steps had already been committed."""

    code = "partial_saga_failure"
    status_code = 500

    def __init__(
        self,
        saga: str,
        *,
        failed_step: str,
        committed_steps: list[str],
        compensated_steps: list[str],
        compensation_errors: dict[str, str],
        cause: BaseException,
    ) -> None:
        super().__init__(
            f"saga {saga} failed at step {failed_step}",
            details={
                "saga": saga,
                "failed_step": failed_step,
                "committed_steps": committed_steps,
                "compensated_steps": compensated_steps,
                "compensation_errors": compensation_errors,
                "cause": str(cause)[:500],
            },
        )
        self.saga = saga
        self.failed_step = failed_step
        self.committed_steps = committed_steps
        self.compensated_steps = compensated_steps
        self.compensation_errors = compensation_errors
        self.cause = cause
