"""
Policy Gate — the rate-limit and approval check in front of every tool call.

Before Conduit executes a tool the model asked for, the gate decides:

1. RATE LIMITING: each tool name has a budget of calls per fixed window.
   Exceeding it denies the call outright, whatever a human might say.
2. APPROVAL: tools whose policy requires it are shown to a human, who must
   answer an explicit "y" for the call to proceed.

Policies are looked up in a table with an explicit default, so every tool
name resolves to some policy. Unknown tools get the strict default:
approval required, ten calls per minute.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

import structlog
from rich.console import Console
from rich.markup import escape as markup_escape

from conduit.config import PolicyConfig

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolPolicy:
    requires_approval: bool = True
    max_calls_per_window: int = 10


DEFAULT_POLICY = ToolPolicy(requires_approval=True, max_calls_per_window=10)

BUILTIN_POLICIES: dict[str, ToolPolicy] = {
    "file-write": ToolPolicy(requires_approval=True, max_calls_per_window=5),
    "execute-command": ToolPolicy(requires_approval=True, max_calls_per_window=2),
    "read-data": ToolPolicy(requires_approval=False, max_calls_per_window=20),
}


class PolicyTable:
    """A mapping of tool name to policy plus the default for everything else."""

    def __init__(
        self,
        policies: Optional[Mapping[str, ToolPolicy]] = None,
        default: ToolPolicy = DEFAULT_POLICY,
    ):
        self._policies = dict(BUILTIN_POLICIES if policies is None else policies)
        self._default = default

    @classmethod
    def from_config(cls, config: PolicyConfig) -> "PolicyTable":
        """Build the table from config; configured entries override the built-ins."""
        default = ToolPolicy(
            requires_approval=config.default_requires_approval,
            max_calls_per_window=config.default_max_calls_per_window,
        )
        policies = dict(BUILTIN_POLICIES)
        for name, entry in config.tool_policies.items():
            policies[name] = ToolPolicy(
                requires_approval=(
                    default.requires_approval
                    if entry.requires_approval is None
                    else entry.requires_approval
                ),
                max_calls_per_window=(
                    default.max_calls_per_window
                    if entry.max_calls_per_window is None
                    else entry.max_calls_per_window
                ),
            )
        return cls(policies, default=default)

    @property
    def default(self) -> ToolPolicy:
        return self._default

    def resolve(self, name: str) -> ToolPolicy:
        return self._policies.get(name, self._default)

    def __contains__(self, name: object) -> bool:
        return name in self._policies


@dataclass
class RateRecord:
    count: int
    window_start: float


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a policy check for a single tool call."""
    allowed: bool
    reason: str = ""
    requires_approval: bool = False
    rate_limited: bool = False


class ApprovalSurface(Protocol):
    """A blocking yes/no decision on whether a tool call may run."""

    def __call__(self, name: str, arguments: dict[str, Any]) -> bool: ...


def is_affirmative(answer: Optional[str]) -> bool:
    """Only an explicit "y" (any case, surrounding whitespace ignored) approves."""
    return answer is not None and answer.strip().lower() == "y"


class ConsoleApproval:
    """Ask the person at the terminal to approve a tool call."""

    def __init__(
        self,
        console: Optional[Console] = None,
        read_line: Callable[[str], str] = input,
    ):
        self._console = console or Console()
        self._read_line = read_line

    def __call__(self, name: str, arguments: dict[str, Any]) -> bool:
        self._console.print()
        self._console.print("[bold yellow]--- Tool Approval Required ---[/bold yellow]")
        self._console.print(f"Tool: [bold]{markup_escape(name)}[/bold]")
        self._console.print("Arguments:")
        self._console.print(
            json.dumps(arguments, indent=2, ensure_ascii=False, default=str),
            markup=False,
            highlight=False,
        )
        try:
            answer = self._read_line("Approve? (y/n): ")
        except EOFError:
            return False
        return is_affirmative(answer)


class StaticApproval:
    """Answer every approval request the same way (non-interactive sessions)."""

    def __init__(self, approve: bool):
        self._approve = approve

    def __call__(self, name: str, arguments: dict[str, Any]) -> bool:
        return self._approve


class PolicyGate:
    """
    Decides, per tool call, whether it may run.

    The decision path is synchronous and ordered: resolve the policy, count
    the call against its rate window, then (only if the rate check passed)
    ask for approval when the policy requires it.

    Rate state is keyed by tool name only; calls with different arguments
    share one budget. At most one approval prompt is outstanding at a time.
    """

    def __init__(
        self,
        policies: Optional[PolicyTable] = None,
        approval: Optional[ApprovalSurface] = None,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._policies = policies or PolicyTable()
        self._approval = approval or StaticApproval(False)
        self._window_seconds = window_seconds
        self._clock = clock
        self._rate_records: dict[str, RateRecord] = {}
        self._prompt_lock = threading.Lock()

        self._total_checks = 0
        self._rate_denials = 0
        self._approval_denials = 0

        logger.info(
            "policy_gate.initialized",
            window_seconds=window_seconds,
            default_requires_approval=self._policies.default.requires_approval,
            default_max_calls=self._policies.default.max_calls_per_window,
        )

    @classmethod
    def from_config(
        cls,
        config: PolicyConfig,
        approval: Optional[ApprovalSurface] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "PolicyGate":
        return cls(
            policies=PolicyTable.from_config(config),
            approval=approval,
            window_seconds=config.rate_window_seconds,
            clock=clock,
        )

    @property
    def policies(self) -> PolicyTable:
        return self._policies

    def authorize(self, name: str, arguments: dict[str, Any]) -> bool:
        return self.check(name, arguments).allowed

    def check(self, name: str, arguments: dict[str, Any]) -> PolicyDecision:
        """Run the full decision path and explain the outcome."""
        self._total_checks += 1
        policy = self._policies.resolve(name)

        if not self._within_rate_limit(name, policy.max_calls_per_window):
            self._rate_denials += 1
            logger.warning(
                "policy_gate.rate_limited",
                tool=name,
                max_calls=policy.max_calls_per_window,
                window_seconds=self._window_seconds,
            )
            return PolicyDecision(
                allowed=False,
                reason=(
                    f"rate limit exceeded ({policy.max_calls_per_window} calls "
                    f"per {self._window_seconds:g}s)"
                ),
                requires_approval=policy.requires_approval,
                rate_limited=True,
            )

        if not policy.requires_approval:
            return PolicyDecision(allowed=True)

        approved = self._request_approval(name, arguments)
        if not approved:
            self._approval_denials += 1
            logger.info("policy_gate.approval_denied", tool=name)
            return PolicyDecision(
                allowed=False,
                reason="not approved by the user",
                requires_approval=True,
            )

        logger.info("policy_gate.approved", tool=name)
        return PolicyDecision(allowed=True, requires_approval=True)

    def _within_rate_limit(self, name: str, max_calls: int) -> bool:
        now = self._clock()
        record = self._rate_records.get(name)
        if record is None or now - record.window_start > self._window_seconds:
            record = RateRecord(count=1, window_start=now)
            self._rate_records[name] = record
        else:
            record.count += 1
        return record.count <= max_calls

    def _request_approval(self, name: str, arguments: dict[str, Any]) -> bool:
        with self._prompt_lock:
            try:
                return bool(self._approval(name, arguments))
            except Exception as exc:
                logger.warning(
                    "policy_gate.approval_surface_failed",
                    tool=name,
                    error=str(exc),
                )
                return False

    def rate_record(self, name: str) -> Optional[RateRecord]:
        record = self._rate_records.get(name)
        if record is None:
            return None
        return RateRecord(count=record.count, window_start=record.window_start)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_checks": self._total_checks,
            "rate_denials": self._rate_denials,
            "approval_denials": self._approval_denials,
            "tracked_tools": len(self._rate_records),
        }
