"""create dr engine tables

Revision ID: 7e1d4c2a9b30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision = "7e1d4c2a9b30"
down_revision = None
branch_labels = None
depends_on = None


config_scope_enum = sa.Enum("system", "tenant", name="drconfigscope", create_type=True)
replication_mode_enum = sa.Enum("sync", "async", name="drreplicationmode", create_type=True)
backup_type_enum = sa.Enum("full", "incremental", "log_archive", name="backuptype", create_type=True)
execution_status_enum = sa.Enum("running", "completed", "failed", name="backupexecutionstatus", create_type=True)
verification_enum = sa.Enum("pending", "verified", "failed", name="backupverification", create_type=True)
link_status_enum = sa.Enum("active", "inactive", "promoted", name="replicationlinkstatus", create_type=True)
link_health_enum = sa.Enum("healthy", "warning", "critical", "failed", name="replicationlinkhealth", create_type=True)
severity_enum = sa.Enum("healthy", "warning", "critical", name="healthseverity", create_type=True)
trigger_enum = sa.Enum("automatic", "manual", "planned", name="failovertrigger", create_type=True)
failover_state_enum = sa.Enum(
    "idle",
    "safety_check",
    "draining",
    "promoting",
    "rerouting",
    "verifying",
    "completed",
    "rolling_back",
    "rolled_back",
    "aborted",
    name="failoverstate",
    create_type=True,
)
failover_outcome_enum = sa.Enum(
    "completed", "aborted", "rolled_back", "rollback_failed", name="failoveroutcome", create_type=True
)
scenario_enum = sa.Enum(
    "backup_restore", "failover", "point_in_time", "full_disaster", name="recoveryscenario", create_type=True
)
environment_enum = sa.Enum("staging", "development", "dr_drill", name="recoveryenvironment", create_type=True)
test_status_enum = sa.Enum("scheduled", "running", "passed", "failed", name="recoveryteststatus", create_type=True)
alert_severity_enum = sa.Enum("info", "warning", "critical", name="dralertseverity", create_type=True)

_ENUMS = (
    config_scope_enum,
    replication_mode_enum,
    backup_type_enum,
    execution_status_enum,
    verification_enum,
    link_status_enum,
    link_health_enum,
    severity_enum,
    trigger_enum,
    failover_state_enum,
    failover_outcome_enum,
    scenario_enum,
    environment_enum,
    test_status_enum,
    alert_severity_enum,
)


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    if is_postgres:
        for enum_type in _ENUMS:
            enum_type.create(bind, checkfirst=True)

    op.create_table(
        "dr_configurations",
        sa.Column("config_id", UUID(as_uuid=True), nullable=False),
        sa.Column("scope", config_scope_enum, nullable=False),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.Column("rto_minutes", sa.Integer(), nullable=False),
        sa.Column("rpo_minutes", sa.Integer(), nullable=False),
        sa.Column("backup_schedule_cron", sa.String(length=120), nullable=False),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("replication_mode", replication_mode_enum, nullable=False),
        sa.Column("cross_region", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("auto_failover", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("approval_required", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("config_id"),
    )
    op.create_index("ix_dr_configurations_tenant_id", "dr_configurations", ["tenant_id"])

    op.create_table(
        "backup_jobs",
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("config_id", UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("backup_type", backup_type_enum, nullable=False),
        sa.Column("scope", sa.JSON(), nullable=False),
        sa.Column("storage_prefix", sa.String(length=255), nullable=False),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("allow_concurrent", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("schedule_cron", sa.String(length=120), nullable=False),
        sa.Column("next_execution_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("total_runs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_runs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_runs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("avg_duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_size_bytes", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["config_id"], ["dr_configurations.config_id"]),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index("ix_backup_jobs_config_id", "backup_jobs", ["config_id"])
    op.create_index("ix_backup_jobs_next_execution_at", "backup_jobs", ["next_execution_at"])

    op.create_table(
        "backup_executions",
        sa.Column("execution_id", UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("running_job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("backup_type", backup_type_enum, nullable=False),
        sa.Column("status", execution_status_enum, nullable=False),
        sa.Column("verification", verification_enum, nullable=False),
        sa.Column("artifact_key", sa.String(length=512), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("raw_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("row_count", sa.BigInteger(), nullable=True),
        sa.Column("base_execution_id", UUID(as_uuid=True), nullable=True),
        sa.Column("data_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data_through", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_tested", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["backup_jobs.job_id"]),
        sa.ForeignKeyConstraint(["base_execution_id"], ["backup_executions.execution_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("execution_id"),
        sa.UniqueConstraint("running_job_id"),
    )
    op.create_index("ix_backup_executions_job_id", "backup_executions", ["job_id"])
    op.create_index("ix_backup_executions_job_started", "backup_executions", ["job_id", "started_at"])

    op.create_table(
        "replication_links",
        sa.Column("link_id", UUID(as_uuid=True), nullable=False),
        sa.Column("primary_region", sa.String(length=64), nullable=False),
        sa.Column("replica_region", sa.String(length=64), nullable=False),
        sa.Column("slot_id", sa.String(length=128), nullable=False),
        sa.Column("mode", replication_mode_enum, nullable=False),
        sa.Column("status", link_status_enum, nullable=False),
        sa.Column("health", link_health_enum, nullable=False),
        sa.Column("last_lag_seconds", sa.Float(), nullable=True),
        sa.Column("lag_measured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("link_id"),
        sa.UniqueConstraint("primary_region", "replica_region", name="uq_replication_link_pair"),
    )
    op.create_index("ix_replication_links_primary_region", "replication_links", ["primary_region"])

    op.create_table(
        "health_snapshots",
        sa.Column("snapshot_id", UUID(as_uuid=True), nullable=False),
        sa.Column("primary_region", sa.String(length=64), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("connection_count", sa.Integer(), nullable=True),
        sa.Column("replication_lag_seconds", sa.Float(), nullable=True),
        sa.Column("cpu_percent", sa.Float(), nullable=True),
        sa.Column("memory_percent", sa.Float(), nullable=True),
        sa.Column("disk_percent", sa.Float(), nullable=True),
        sa.Column("saturation_percent", sa.Float(), nullable=True),
        sa.Column("failed_backups_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_backup_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("critical_signals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("severity", severity_enum, nullable=False),
        sa.Column("failover_recommended", sa.Boolean(), nullable=False, server_default="false"),
        sa.PrimaryKeyConstraint("snapshot_id"),
    )
    op.create_index("ix_health_snapshots_region_captured", "health_snapshots", ["primary_region", "captured_at"])

    op.create_table(
        "failover_events",
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("environment", sa.String(length=40), nullable=False),
        sa.Column("source_region", sa.String(length=64), nullable=False),
        sa.Column("target_region", sa.String(length=64), nullable=False),
        sa.Column("active_key", sa.String(length=128), nullable=True),
        sa.Column("trigger_type", trigger_enum, nullable=False),
        sa.Column("state", failover_state_enum, nullable=False),
        sa.Column("outcome", failover_outcome_enum, nullable=True),
        sa.Column("config_id", UUID(as_uuid=True), nullable=True),
        sa.Column("snapshot_id", UUID(as_uuid=True), nullable=True),
        sa.Column("requested_by", sa.String(length=120), nullable=True),
        sa.Column("override_safety_checks", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("cancelled_by", sa.String(length=120), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("rollback_attempted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("rollback_successful", sa.Boolean(), nullable=True),
        sa.Column("rollback_error", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["config_id"], ["dr_configurations.config_id"]),
        sa.ForeignKeyConstraint(["snapshot_id"], ["health_snapshots.snapshot_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("event_id"),
        sa.UniqueConstraint("active_key"),
    )
    op.create_index("ix_failover_events_region_started", "failover_events", ["source_region", "started_at"])

    op.create_table(
        "failover_transitions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("from_state", failover_state_enum, nullable=True),
        sa.Column("to_state", failover_state_enum, nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["failover_events.event_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failover_transitions_event_id", "failover_transitions", ["event_id"])

    op.create_table(
        "recovery_tests",
        sa.Column("test_id", UUID(as_uuid=True), nullable=False),
        sa.Column("parent_test_id", UUID(as_uuid=True), nullable=True),
        sa.Column("config_id", UUID(as_uuid=True), nullable=True),
        sa.Column("job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("scenario", scenario_enum, nullable=False),
        sa.Column("environment", environment_enum, nullable=False),
        sa.Column("cadence_cron", sa.String(length=120), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", test_status_enum, nullable=False),
        sa.Column("target_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expected_rto_minutes", sa.Float(), nullable=True),
        sa.Column("expected_rpo_minutes", sa.Float(), nullable=True),
        sa.Column("actual_rto_minutes", sa.Float(), nullable=True),
        sa.Column("actual_rpo_minutes", sa.Float(), nullable=True),
        sa.Column("data_integrity_verified", sa.Boolean(), nullable=True),
        sa.Column("passed", sa.Boolean(), nullable=True),
        sa.Column("issues_found", sa.JSON(), nullable=False),
        sa.Column("remediation_required", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("failover_event_id", UUID(as_uuid=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["parent_test_id"], ["recovery_tests.test_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["config_id"], ["dr_configurations.config_id"]),
        sa.ForeignKeyConstraint(["job_id"], ["backup_jobs.job_id"]),
        sa.ForeignKeyConstraint(["failover_event_id"], ["failover_events.event_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("test_id"),
    )
    op.create_index("ix_recovery_tests_parent_test_id", "recovery_tests", ["parent_test_id"])
    op.create_index("ix_recovery_tests_next_run_at", "recovery_tests", ["next_run_at"])

    op.create_table(
        "dr_alerts",
        sa.Column("alert_id", UUID(as_uuid=True), nullable=False),
        sa.Column("severity", alert_severity_enum, nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("dispatched", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("alert_id"),
    )
    op.create_index("ix_dr_alerts_created_at", "dr_alerts", ["created_at"])


def downgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    op.drop_index("ix_dr_alerts_created_at", table_name="dr_alerts")
    op.drop_table("dr_alerts")
    op.drop_index("ix_recovery_tests_next_run_at", table_name="recovery_tests")
    op.drop_index("ix_recovery_tests_parent_test_id", table_name="recovery_tests")
    op.drop_table("recovery_tests")
    op.drop_index("ix_failover_transitions_event_id", table_name="failover_transitions")
    op.drop_table("failover_transitions")
    op.drop_index("ix_failover_events_region_started", table_name="failover_events")
    op.drop_table("failover_events")
    op.drop_index("ix_health_snapshots_region_captured", table_name="health_snapshots")
    op.drop_table("health_snapshots")
    op.drop_index("ix_replication_links_primary_region", table_name="replication_links")
    op.drop_table("replication_links")
    op.drop_index("ix_backup_executions_job_started", table_name="backup_executions")
    op.drop_index("ix_backup_executions_job_id", table_name="backup_executions")
    op.drop_table("backup_executions")
    op.drop_index("ix_backup_jobs_next_execution_at", table_name="backup_jobs")
    op.drop_index("ix_backup_jobs_config_id", table_name="backup_jobs")
    op.drop_table("backup_jobs")
    op.drop_index("ix_dr_configurations_tenant_id", table_name="dr_configurations")
    op.drop_table("dr_configurations")

    if is_postgres:
        for enum_type in reversed(_ENUMS):
            enum_type.drop(bind, checkfirst=True)
