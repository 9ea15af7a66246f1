"""Prometheus metrics for automation runs (low-cardinality labels only)."""

from prometheus_client import Counter, Histogram

AUTOMATION_RUNS_TOTAL = Counter(
    "automation_runs_total",
    "Automation engine invocations",
    ["trigger", "outcome"],
)
AUTOMATION_RULE_EVALUATIONS_TOTAL = Counter(
    "automation_rule_evaluations_total",
    "Rules evaluated, by resulting log status",
    ["trigger", "status"],
)
AUTOMATION_ACTIONS_TOTAL = Counter(
    "automation_actions_total",
    "Actions executed, by type and outcome",
    ["action_type", "status"],
)
AUTOMATION_RUN_DURATION_SECONDS = Histogram(
    "automation_run_duration_seconds",
    "Automation engine invocation duration in seconds",
    ["trigger"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
