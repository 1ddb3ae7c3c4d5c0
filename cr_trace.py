"""
Per-request tracing for report builds.

A ReportTrace collects two kinds of records while one report is built:

  - SourceStage: one per guarded source fetch (source key, duration,
    outcome, number of provider calls made while it ran)
  - ProviderCall: one per outbound HTTP request (provider, endpoint,
    duration, HTTP status, a short note such as "cache_hit")

Source fetches run on pool threads, so the open stage is tracked per
thread and a provider call is attributed to the stage its own thread
opened.

The trace lives in a thread-local.  The request handler installs it, the
assembler hands it to its pool threads, provider code looks it up:

    trace = ReportTrace(trace_id=request_id)
    set_trace(trace)
    ...                       # build_report() -> set_trace(parent) per worker
    trace.log_summary()
    clear_trace()
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

STAGE_OK = "ok"
STAGE_EMPTY = "empty"
STAGE_ERROR = "error"
STAGE_CANCELLED = "cancelled"


@dataclass
class ProviderCall:
    provider: str         # "cbs" | "overpass" | "luchtmeetnet" | "pdok"
    endpoint: str         # "85618NED", "stations", "bodemkaart", ...
    elapsed_ms: int
    status_code: int      # 0 when no HTTP response was received
    note: str = ""
    source: str = ""      # source stage open on the calling thread


@dataclass
class SourceStage:
    source: str
    outcome: str
    elapsed_ms: int
    calls: int = 0
    error: str = ""


@dataclass
class ReportTrace:
    trace_id: str
    started: float = field(default_factory=time.monotonic)
    stages: List[SourceStage] = field(default_factory=list)
    calls: List[ProviderCall] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _open: Dict[int, Tuple[str, float]] = field(default_factory=dict, repr=False)

    # Stages ----------------------------------------------------------

    def open_stage(self, source: str) -> None:
        with self._lock:
            self._open[threading.get_ident()] = (source, time.monotonic())

    @property
    def active_source(self) -> str:
        with self._lock:
            opened = self._open.get(threading.get_ident())
        return opened[0] if opened else ""

    def close_stage(self, outcome: str, error: str = "") -> Optional[SourceStage]:
        """Close the stage this thread opened; None if it never opened one."""
        with self._lock:
            opened = self._open.pop(threading.get_ident(), None)
            if opened is None:
                return None
            source, t0 = opened
            stage = SourceStage(
                source=source,
                outcome=outcome,
                elapsed_ms=int((time.monotonic() - t0) * 1000),
                calls=sum(1 for c in self.calls if c.source == source),
                error=error,
            )
            self.stages.append(stage)

        logger.info(
            "  [stage] trace=%s %s %s %dms calls=%d%s",
            self.trace_id, source, outcome, stage.elapsed_ms, stage.calls,
            f" err={error}" if error else "",
        )
        return stage

    # Provider calls --------------------------------------------------

    def record_call(
        self,
        provider: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        note: str = "",
    ) -> None:
        call = ProviderCall(
            provider=provider,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            note=note,
            source=self.active_source,
        )
        with self._lock:
            self.calls.append(call)
        logger.info(
            "  [api] trace=%s source=%s %s/%s %dms http=%d %s",
            self.trace_id, call.source or "-", provider, endpoint,
            elapsed_ms, status_code, note,
        )

    # Summary ---------------------------------------------------------

    def outcome(self) -> str:
        """complete | partial | failed | empty, judged by stage outcomes."""
        with self._lock:
            outcomes = [s.outcome for s in self.stages]
        if not outcomes:
            return "empty"
        ok = outcomes.count(STAGE_OK)
        if ok == len(outcomes):
            return "complete"
        return "partial" if ok else "failed"

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            stages = list(self.stages)
            n_calls = len(self.calls)
        counts = Counter(s.outcome for s in stages)
        return {
            "trace_id": self.trace_id,
            "elapsed_ms": int((time.monotonic() - self.started) * 1000),
            "provider_calls": n_calls,
            "stages": {o: counts.get(o, 0) for o in (STAGE_OK, STAGE_EMPTY, STAGE_ERROR, STAGE_CANCELLED)},
            "outcome": self.outcome(),
            "sources": [
                {"source": s.source, "outcome": s.outcome, "elapsed_ms": s.elapsed_ms, "calls": s.calls}
                for s in stages
            ],
        }

    def log_summary(self) -> None:
        s = self.summary()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d provider_calls=%d ok=%d empty=%d "
            "error=%d cancelled=%d outcome=%s",
            s["trace_id"], s["elapsed_ms"], s["provider_calls"],
            s["stages"][STAGE_OK], s["stages"][STAGE_EMPTY],
            s["stages"][STAGE_ERROR], s["stages"][STAGE_CANCELLED],
            s["outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_local = threading.local()


def get_trace() -> Optional[ReportTrace]:
    return getattr(_local, "trace", None)


def set_trace(trace: Optional[ReportTrace]) -> None:
    _local.trace = trace


def clear_trace() -> None:
    _local.trace = None
