"""Per-session telemetry: JSONL event log plus optional OpenTelemetry spans."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
import json
import os
import threading
import time
from typing import Any

from agent.config import TelemetryConfig


SPAN_PREFIX = "tiered_agents"


@dataclass
class LLMCallMetric:
    """One backend call, tagged with the tier that served it."""
    backend_id: str
    model: str
    tier: str
    input_tokens: int
    output_tokens: int
    latency_ms: float
    error: str | None = None


@dataclass
class ToolCallMetric:
    tool_name: str
    args: dict
    duration_ms: float
    result_summary: str
    error: str | None = None


@dataclass
class LoopIterationMetric:
    iteration: int
    decision: str
    duration_ms: float


@dataclass
class ApprovalMetric:
    tool_name: str
    outcome: str
    actor: str


@dataclass
class LoopMetrics:
    """Session-level rollup returned by ``Telemetry.summary``."""
    session_id: str
    total_iterations: int
    turns: int
    tool_calls: list[ToolCallMetric]
    llm_calls: list[LLMCallMetric]
    approvals: list[ApprovalMetric]
    tokens_by_tier: dict[str, int] = field(default_factory=dict)
    approvals_by_outcome: dict[str, int] = field(default_factory=dict)
    tool_errors: int = 0
    total_duration_ms: float = 0.0
    final_reason: str = ""


class Telemetry:
    """
    Collects what one session did: backend calls per tier, tool calls,
    approval decisions and loop iterations. Nothing is recorded when
    telemetry is disabled. When enabled every event is appended to
    ``<log_dir>/<session_id>.jsonl``.
    """

    def __init__(self, config: TelemetryConfig, session_id: str):
        self.config = config
        self.session_id = session_id
        self._lock = threading.Lock()
        self._start_time = time.monotonic()
        self._llm_calls: list[LLMCallMetric] = []
        self._tool_calls: list[ToolCallMetric] = []
        self._iterations: list[LoopIterationMetric] = []
        self._approvals: list[ApprovalMetric] = []
        self._turns = 0
        self._final_reason = ""
        self._log_path: str | None = None
        self._tracer = None

        if self.config.enabled:
            os.makedirs(self.config.log_dir, exist_ok=True)
            self._log_path = os.path.join(self.config.log_dir, f"{session_id}.jsonl")
            if self.config.otel_enabled:
                self._tracer = self._build_tracer()

    # ── Recording ────────────────────────────────────────────────────

    def record_llm_call(
        self,
        backend_id: str,
        model: str,
        tier: str,
        input_tokens: int,
        output_tokens: int,
        latency_ms: float,
        error: str | None = None,
    ) -> None:
        metric = LLMCallMetric(
            backend_id=backend_id,
            model=model,
            tier=tier,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            error=error,
        )
        self._capture("llm_call", metric, self._llm_calls, span=True)

    def record_tool_call(
        self,
        tool_name: str,
        args: dict,
        duration_ms: float,
        result_summary: str,
        error: str | None = None,
    ) -> None:
        metric = ToolCallMetric(
            tool_name=tool_name,
            args=args,
            duration_ms=duration_ms,
            result_summary=result_summary,
            error=error,
        )
        # arguments may hold file contents; keep them out of spans
        self._capture("tool_call", metric, self._tool_calls, span=True, span_exclude=("args",))

    def record_iteration(self, iteration: int, decision: str, duration_ms: float) -> None:
        metric = LoopIterationMetric(iteration=iteration, decision=decision, duration_ms=duration_ms)
        self._capture("loop_iteration", metric, self._iterations)

    def record_approval(self, tool_name: str, outcome: str, actor: str) -> None:
        metric = ApprovalMetric(tool_name=tool_name, outcome=outcome, actor=actor)
        self._capture("approval", metric, self._approvals, span=True)

    def finalize(self, final_reason: str) -> None:
        """Close out a turn; writes a session summary line."""
        if not self.config.enabled:
            return
        with self._lock:
            self._turns += 1
            self._final_reason = final_reason
        self._log_event("session_summary", self.summary_dict())

    # ── Reading ──────────────────────────────────────────────────────

    def summary(self) -> LoopMetrics:
        with self._lock:
            llm_calls = list(self._llm_calls)
            tool_calls = list(self._tool_calls)
            approvals = list(self._approvals)
            iterations = len(self._iterations)
            turns = self._turns
            final_reason = self._final_reason

        tokens_by_tier: Counter = Counter()
        for call in llm_calls:
            tokens_by_tier[call.tier] += call.input_tokens + call.output_tokens

        return LoopMetrics(
            session_id=self.session_id,
            total_iterations=iterations,
            turns=turns,
            tool_calls=tool_calls,
            llm_calls=llm_calls,
            approvals=approvals,
            tokens_by_tier=dict(tokens_by_tier),
            approvals_by_outcome=dict(Counter(a.outcome for a in approvals)),
            tool_errors=sum(1 for t in tool_calls if t.error is not None),
            total_duration_ms=(time.monotonic() - self._start_time) * 1000,
            final_reason=final_reason,
        )

    def summary_dict(self) -> dict[str, Any]:
        return asdict(self.summary())

    # ── Sinks ────────────────────────────────────────────────────────

    def _capture(self, event_type: str, metric, bucket: list, span: bool = False, span_exclude=()) -> None:
        if not self.config.enabled:
            return
        payload = asdict(metric)
        with self._lock:
            bucket.append(metric)
        self._log_event(event_type, payload)
        if span:
            self._emit_span(event_type, {k: v for k, v in payload.items() if k not in span_exclude})

    def _log_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if not self._log_path:
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "event": event_type,
            **payload,
        }
        line = json.dumps(record, default=str)
        with self._lock:
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def _emit_span(self, name: str, attributes: dict[str, Any]) -> None:
        if self._tracer is None:
            return
        with self._tracer.start_as_current_span(f"{SPAN_PREFIX}.{name}") as span:
            span.set_attribute("session.id", self.session_id)
            for key, value in attributes.items():
                if isinstance(value, (str, bool, int, float)):
                    span.set_attribute(key, value)

    def _build_tracer(self):
        """Set up an OTLP tracer, or return None when the otel extra is missing."""
        try:
            from opentelemetry import trace
            from opentelemetry.sdk.resources import Resource
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import BatchSpanProcessor
        except ImportError:
            self._log_event(
                "telemetry_warning",
                {"message": "OpenTelemetry is not installed; spans disabled."},
            )
            return None

        resource = Resource.create({"service.name": self.config.otel_service_name})
        provider = TracerProvider(resource=resource)
        if self.config.otel_endpoint:
            try:
                from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
            except ImportError:
                self._log_event(
                    "telemetry_warning",
                    {"message": "OTLP HTTP exporter is not installed; spans are not exported."},
                )
            else:
                provider.add_span_processor(
                    BatchSpanProcessor(OTLPSpanExporter(endpoint=self.config.otel_endpoint))
                )

        trace.set_tracer_provider(provider)
        return trace.get_tracer(SPAN_PREFIX)
