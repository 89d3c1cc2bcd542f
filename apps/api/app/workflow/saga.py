from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from app.context import (
    get_correlation_id,
    reset_correlation_id,
    reset_saga_name,
    set_correlation_id,
    set_saga_name,
)
from app.core.config import get_settings
from app.core.errors import ConflictError, PartialSagaFailure, StoreError, UnavailableError
from app.metrics import observe_saga_run
from app.otel import engine_span
from app.services.activity import activity_logger
from app.workflow.models import SagaRun


logger = logging.getLogger("app.workflow.saga")

T = TypeVar("T")
Compensation = Callable[[Session, Any], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def translate_store_error(exc: SQLAlchemyError) -> StoreError:
    detail = {"error": str(getattr(exc, "orig", None) or exc)[:300]}
    if isinstance(exc, IntegrityError):
        return ConflictError("document was written concurrently", details=detail)
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return UnavailableError("document store unavailable", details=detail)
    return StoreError("document store error", details=detail)


@dataclass
class _CompletedStep:
    name: str
    value: Any
    compensate: Compensation | None


@dataclass
class SagaRunner:
    """Runs the steps of one saga invocation and keeps its SagaRun log row current.

    In `atomic` mode every step is flushed into a single transaction that commits once at
    the end. In `step` mode each step commits on its own and a failure runs the registered
    compensations of the committed steps in reverse order.
    """

    session: Session
    saga: str
    subject_id: str
    mode: str
    correlation_id: str
    run_id: uuid.UUID = field(default_factory=uuid.uuid4)
    result: dict[str, Any] | None = None
    _steps: list[dict[str, Any]] = field(default_factory=list)
    _completed: list[_CompletedStep] = field(default_factory=list)
    _current_step: str | None = None

    def begin(self) -> None:
        self.session.add(
            SagaRun(
                id=self.run_id,
                correlation_id=self.correlation_id,
                saga=self.saga,
                mode=self.mode,
                subject_id=self.subject_id,
                status="running",
                steps=[],
            )
        )
        self.session.flush()
        if self.mode == "step":
            self.session.commit()
        logger.info(
            "saga.started",
            extra={"saga": self.saga, "run_id": str(self.run_id), "subject_id": self.subject_id, "status": "running"},
        )

    def step(self, name: str, action: Callable[[], T], *, compensate: Compensation | None = None) -> T:
        self._current_step = name
        with engine_span("app.workflow", f"saga.{self.saga}.{name}", saga=self.saga, step=name):
            value = action()
            self.session.flush()

        if self.mode == "step":
            self._steps.append({"name": name, "status": "committed", "at": utcnow().isoformat()})
            self._write_run(status="running")
            self.session.commit()
        else:
            self._steps.append({"name": name, "status": "done", "at": utcnow().isoformat()})

        self._completed.append(_CompletedStep(name=name, value=value, compensate=compensate))
        self._current_step = None
        logger.info("saga.step_completed", extra={"saga": self.saga, "step": name, "run_id": str(self.run_id)})
        return value

    def complete(self, result: dict[str, Any], *, idempotent: bool = False) -> dict[str, Any]:
        self.result = {**result, "idempotent": idempotent} if idempotent else dict(result)
        return result

    def finish(self) -> None:
        self._write_run(status="completed", result=self.result, finished=True)
        self.session.commit()
        activity_logger.publish_pending(self.session)
        logger.info(
            "saga.completed",
            extra={"saga": self.saga, "run_id": str(self.run_id), "subject_id": self.subject_id, "status": "completed"},
        )

    def fail(self, error: BaseException) -> BaseException:
        """Roll back, compensate where needed and return the exception the caller should raise."""
        failed_step = self._current_step or ("finish" if self._completed else "prepare")
        self.session.rollback()
        activity_logger.discard_pending(self.session)

        if self.mode != "step":
            self._steps = [{**item, "status": "rolled_back"} for item in self._steps]
            self._steps.append({"name": failed_step, "status": "failed", "at": utcnow().isoformat()})
            self._persist_outcome("failed", error)
            return error

        self._steps.append({"name": failed_step, "status": "failed", "at": utcnow().isoformat()})
        committed = [item.name for item in self._completed]
        if not committed:
            self._persist_outcome("failed", error)
            return error

        compensated, compensation_errors = self._compensate()
        status = "compensation_failed" if compensation_errors else "compensated"
        self._persist_outcome(status, error)
        return PartialSagaFailure(
            self.saga,
            failed_step=failed_step,
            committed_steps=committed,
            compensated_steps=compensated,
            compensation_errors=compensation_errors,
            cause=error,
        )

    def _compensate(self) -> tuple[list[str], dict[str, str]]:
        compensated: list[str] = []
        errors: dict[str, str] = {}
        for item in reversed(self._completed):
            if item.compensate is None:
                continue
            try:
                item.compensate(self.session, item.value)
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                errors[item.name] = str(exc)[:300]
                self._mark_step(item.name, "compensation_failed")
                logger.exception(
                    "saga.compensation_failed",
                    extra={"saga": self.saga, "step": item.name, "run_id": str(self.run_id), "error": str(exc)},
                )
                continue
            compensated.append(item.name)
            self._mark_step(item.name, "compensated")
        return compensated, errors

    def _mark_step(self, name: str, status: str) -> None:
        self._steps = [{**item, "status": status} if item["name"] == name else item for item in self._steps]

    def _write_run(self, *, status: str, result: dict[str, Any] | None = None, error: str | None = None, finished: bool = False) -> None:
        run = self.session.get(SagaRun, self.run_id)
        if run is None:
            run = SagaRun(
                id=self.run_id,
                correlation_id=self.correlation_id,
                saga=self.saga,
                mode=self.mode,
                subject_id=self.subject_id,
            )
            self.session.add(run)
        run.status = status
        run.steps = [dict(item) for item in self._steps]
        if result is not None:
            run.result = result
        if error is not None:
            run.error = error
        if finished:
            run.finished_at = utcnow()
        self.session.flush()

    def _persist_outcome(self, status: str, error: BaseException) -> None:
        message = str(error)[:500] or type(error).__name__
        try:
            self._write_run(status=status, error=message, finished=True)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("saga.log_write_failed", extra={"saga": self.saga, "run_id": str(self.run_id), "status": status})
        logger.warning(
            "saga.failed",
            extra={"saga": self.saga, "run_id": str(self.run_id), "subject_id": self.subject_id, "status": status, "error": message},
        )


@contextmanager
def saga_run(session: Session, saga: str, subject_id: Any) -> Iterator[SagaRunner]:
    settings = get_settings()
    correlation_id = get_correlation_id() or str(uuid.uuid4())
    correlation_token = set_correlation_id(correlation_id)
    saga_token = set_saga_name(saga)
    runner = SagaRunner(
        session=session,
        saga=saga,
        subject_id=str(subject_id),
        mode=settings.saga_mode,
        correlation_id=correlation_id,
    )
    started = time.perf_counter()
    outcome = "failed"
    try:
        with engine_span("app.workflow", f"saga.{saga}", saga=saga, subject_id=subject_id, mode=runner.mode):
            try:
                runner.begin()
                yield runner
                runner.finish()
                outcome = "completed"
            except SQLAlchemyError as exc:
                raise runner.fail(translate_store_error(exc)) from exc
            except Exception as exc:
                failure = runner.fail(exc)
                if failure is exc:
                    raise
                raise failure from exc
    finally:
        observe_saga_run(saga, outcome, time.perf_counter() - started)
        reset_saga_name(saga_token)
        reset_correlation_id(correlation_token)
