from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "dr_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "dr_job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

BACKUP_EXECUTIONS = Counter(
    "dr_backup_executions_total",
    "Finished backup executions",
    ["job", "backup_type", "status"],
)
BACKUP_LAST_SUCCESS = Gauge(
    "dr_backup_last_success_timestamp",
    "Last successful backup time (unix timestamp)",
    ["job"],
)
BACKUP_SIZE = Gauge(
    "dr_backup_last_size_bytes",
    "Compressed size of the last successful backup",
    ["job"],
)
BACKUP_CONSECUTIVE_FAILURES = Gauge(
    "dr_backup_consecutive_failures",
    "Consecutive failed executions per backup job",
    ["job"],
)

REPLICATION_LAG = Gauge(
    "dr_replication_lag_seconds",
    "Last measured replication lag",
    ["primary_region", "replica_region"],
)

HEALTH_SEVERITY = Gauge(
    "dr_health_severity",
    "Latest health severity (0=healthy, 1=warning, 2=critical)",
    ["primary_region"],
)
HEALTH_FAILOVER_RECOMMENDED = Gauge(
    "dr_health_failover_recommended",
    "Whether the latest snapshot recommends failover",
    ["primary_region"],
)

FAILOVER_TRANSITIONS = Counter(
    "dr_failover_transitions_total",
    "Failover state machine transitions",
    ["state", "trigger_type"],
)
FAILOVER_DURATION = Histogram(
    "dr_failover_duration_seconds",
    "Wall-clock duration of failover attempts",
    ["outcome"],
    buckets=(5, 15, 30, 60, 120, 300, 600, 1800, 3600, 14400),
)

RECOVERY_TEST_RESULTS = Counter(
    "dr_recovery_test_results_total",
    "Recovery test outcomes",
    ["scenario", "result"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
