"""
Lightweight latency tracing for workflow operations.

Approval decisions depend on reads from an external store (rules,
overlapping requests, substitutions, headcount, balances). When a
decision looks wrong, the first question is usually which read was slow
or failed. Every data-source call and workflow operation is wrapped in a
span so that each one leaves a structured duration record.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

logger = logging.getLogger("leave_workflow.trace")


@contextmanager
def trace_span(name: str, **metadata):
    """
    Measure execution duration of a workflow or data-source operation.

    Example log:
    [TRACE] detect_conflicts duration_ms=12.40 status=ok department=Finance

    Guarantees
    ----------
    - Always logs completion, with status=error when the block raised
    - Never suppresses exceptions
    - Produces key=value logs
    """
    start = time.perf_counter()
    status = "ok"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000

        meta = " ".join(f"{k}={v}" for k, v in metadata.items())
        logger.info("[TRACE] %s duration_ms=%.2f status=%s %s", name, duration_ms, status, meta)
