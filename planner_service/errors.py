"""
Error taxonomy for the planning engine.

Agent-level errors carry an ErrorKind so the runner can decide whether to
retry and so the failed NodeExecution keeps the classification. Run-level
errors (BudgetExceeded, RunCancelled) are raised by the orchestrator and the
ledger and never retried.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    BUDGET_EXCEEDED = "budget_exceeded"
    CANCELLED = "cancelled"


class PlannerError(Exception):
    """Base class for every error raised by planner_service."""


class AgentError(PlannerError):
    kind: ErrorKind = ErrorKind.PERMANENT
    retryable: bool = False

    def __init__(self, message: str = "", *, agent_type: Optional[str] = None, cost_usd: float = 0.0):
        self.agent_type = agent_type
        # cost already incurred by the failing call, if the provider reports it
        self.cost_usd = float(cost_usd or 0.0)
        super().__init__(message or self.kind.value)


class TransientAgentError(AgentError):
    kind = ErrorKind.TRANSIENT
    retryable = True


class PermanentAgentError(AgentError):
    kind = ErrorKind.PERMANENT
    retryable = False


class AgentTimeoutError(AgentError):
    kind = ErrorKind.TIMEOUT
    retryable = True


class QuotaExceededError(AgentError):
    kind = ErrorKind.QUOTA_EXCEEDED
    retryable = False


class BudgetExceeded(PlannerError):
    kind = ErrorKind.BUDGET_EXCEEDED

    def __init__(self, run_id: str, total_usd: float, ceiling_usd: float):
        self.run_id = run_id
        self.total_usd = total_usd
        self.ceiling_usd = ceiling_usd
        super().__init__(f"run {run_id} projected cost {total_usd:.4f} exceeds ceiling {ceiling_usd:.4f}")


class RunCancelled(PlannerError):
    kind = ErrorKind.CANCELLED

    def __init__(self, run_id: Optional[str] = None, reason: str = "cancelled"):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"run {run_id} cancelled: {reason}")


class CacheUnavailable(PlannerError):
    """Cache backend failed; callers degrade to a direct external call."""


class ContextStoreStale(PlannerError):
    """Raised by strict readers when a search hit lags its structured record."""

    def __init__(self, record_ids):
        self.record_ids = list(record_ids)
        super().__init__(f"stale context records: {', '.join(self.record_ids)}")


class InvalidTransition(PlannerError):
    pass


class GraphValidationError(PlannerError):
    pass


class RunNotFound(PlannerError, KeyError):
    pass


class UnknownAgentType(PlannerError, KeyError):
    pass


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, AgentError):
        return exc.kind
    if isinstance(exc, BudgetExceeded):
        return ErrorKind.BUDGET_EXCEEDED
    if isinstance(exc, RunCancelled):
        return ErrorKind.CANCELLED
    return ErrorKind.PERMANENT
