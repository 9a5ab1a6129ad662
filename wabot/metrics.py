"""Plugin and task metrics -- structured analysis of runtime state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from wabot.types import PluginDescriptor, PluginState, TaskState

HIGH_ERROR_RATE = 0.10
SLOW_EXECUTION_MS = 5000.0
FAILING_TASK_STREAK = 3


@dataclass
class PluginStats:
    """Computed metrics for a single plugin."""

    filename: str
    name: str
    version: str
    enabled: bool
    executions: int = 0
    crashes: int = 0
    error_rate: float = 0.0
    avg_execution_ms: float = 0.0
    last_error: str | None = None
    last_execution: str | None = None
    disabled_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "name": self.name,
            "version": self.version,
            "enabled": self.enabled,
            "executions": self.executions,
            "crashes": self.crashes,
            "error_rate": round(self.error_rate, 3),
            "avg_execution_ms": round(self.avg_execution_ms, 1),
            "last_error": self.last_error,
            "last_execution": self.last_execution,
            "disabled_reason": self.disabled_reason,
        }


def compute_plugin_stats(desc: PluginDescriptor, state: PluginState) -> PluginStats:
    """Pure function. No I/O. No side effects."""
    return PluginStats(
        filename=desc.filename,
        name=desc.name,
        version=desc.version,
        enabled=state.enabled,
        executions=state.executions,
        crashes=state.crashes,
        error_rate=state.crashes / state.executions if state.executions else 0.0,
        avg_execution_ms=state.avg_execution_time,
        last_error=state.last_error,
        last_execution=state.last_execution.isoformat() if state.last_execution else None,
        disabled_reason=state.disabled_reason,
    )


@dataclass
class RegistryStats:
    """Aggregated counters across all loaded plugins."""

    total: int = 0
    enabled: int = 0
    disabled: int = 0
    commands: int = 0
    executions: int = 0
    crashes: int = 0
    avg_execution_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "enabled": self.enabled,
            "disabled": self.disabled,
            "commands": self.commands,
            "executions": self.executions,
            "crashes": self.crashes,
            "avg_execution_ms": round(self.avg_execution_ms, 1),
        }


def aggregate_plugin_stats(stats: list[PluginStats], command_count: int = 0) -> RegistryStats:
    agg = RegistryStats(total=len(stats), commands=command_count)
    weighted = 0.0
    for s in stats:
        if s.enabled:
            agg.enabled += 1
        else:
            agg.disabled += 1
        agg.executions += s.executions
        agg.crashes += s.crashes
        weighted += s.avg_execution_ms * s.executions
    agg.avg_execution_ms = weighted / agg.executions if agg.executions else 0.0
    return agg


@dataclass
class HealthReport:
    healthy: bool = True
    critical: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def critical_issues(self) -> int:
        return len(self.critical)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "critical_issues": self.critical_issues,
            "critical": self.critical,
            "warnings": self.warnings,
        }


def assess_health(
    stats: list[PluginStats],
    tasks: list[TaskState],
    crash_threshold: int,
    task_failure_threshold: int,
) -> HealthReport:
    """Classify plugin and task problems.

    Critical: a plugin switched off by the crash threshold, a task switched
    off by the failure threshold, or a task failing several runs in a row.
    Warnings: high error rate or slow average execution.
    """
    report = HealthReport()
    for s in stats:
        if not s.enabled and s.crashes >= crash_threshold:
            report.critical.append(f"{s.name}: auto-disabled after {s.crashes} crashes")
            continue
        if s.error_rate > HIGH_ERROR_RATE:
            report.warnings.append(f"{s.name}: high error rate ({round(s.error_rate * 100)}%)")
        if s.avg_execution_ms > SLOW_EXECUTION_MS:
            report.warnings.append(f"{s.name}: slow execution ({s.avg_execution_ms / 1000:.1f}s avg)")
    for t in tasks:
        if not t.enabled and t.failures >= task_failure_threshold:
            report.critical.append(f"task {t.task_id}: auto-disabled after {t.failures} failures")
        elif t.enabled and t.failures >= FAILING_TASK_STREAK:
            report.critical.append(f"task {t.task_id}: {t.failures} consecutive failures")
    report.healthy = not report.critical
    return report
