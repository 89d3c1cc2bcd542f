from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

saga_runs_total = Counter(
    "workflow_saga_runs_total",
    "Total workflow saga runs by outcome",
    ["saga", "status"],
)

saga_duration_seconds = Histogram(
    "workflow_saga_duration_seconds",
    "Workflow saga duration in seconds",
    ["saga"],
)

automation_rule_runs_total = Counter(
    "automation_rule_runs_total",
    "Total automation rule runs by outcome",
    ["trigger_type", "outcome"],
)

automation_rule_duration_seconds = Histogram(
    "automation_rule_duration_seconds",
    "Automation rule run duration in seconds",
    ["trigger_type"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total automation actions by type and outcome",
    ["action_type", "outcome"],
)

automation_depth_blocks_total = Counter(
    "automation_depth_blocks_total",
    "Automation dispatches skipped because the nesting limit was reached",
)

ledger_entries_posted_count = Counter(
    "ledger_entries_posted_count",
    "Total posted ledger entries",
)

ledger_postings_skipped_count = Counter(
    "ledger_postings_skipped_count",
    "Total ledger postings skipped by reason",
    ["reason"],
)

ledger_post_failures_count = Counter(
    "ledger_post_failures_count",
    "Total ledger post failures by reason",
    ["reason"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attr in ("path_format", "path"):
            value = getattr(route, attr, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_saga_run(saga: str, status: str, duration: float) -> None:
    saga_runs_total.labels(saga=saga, status=status).inc()
    saga_duration_seconds.labels(saga=saga).observe(duration)


def observe_rule_run(trigger_type: str, outcome: str, duration: float) -> None:
    automation_rule_runs_total.labels(trigger_type=trigger_type, outcome=outcome).inc()
    automation_rule_duration_seconds.labels(trigger_type=trigger_type).observe(duration)


def observe_action(action_type: str, succeeded: bool) -> None:
    automation_actions_total.labels(action_type=action_type, outcome="succeeded" if succeeded else "failed").inc()


def observe_automation_depth_block() -> None:
    automation_depth_blocks_total.inc()


def observe_ledger_entries_posted(count: int = 1) -> None:
    if count > 0:
        ledger_entries_posted_count.inc(count)


def observe_ledger_posting_skipped(reason: str) -> None:
    ledger_postings_skipped_count.labels(reason=reason).inc()


def observe_ledger_post_failure(reason: str) -> None:
    ledger_post_failures_count.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
