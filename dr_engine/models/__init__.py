from dr_engine.models.backup import (  # noqa: F401
    BackupExecution,
    BackupJob,
    BackupType,
    ExecutionStatus,
    VerificationStatus,
)
from dr_engine.models.dr_alert import AlertSeverity, DRAlert  # noqa: F401
from dr_engine.models.dr_configuration import ConfigScope, DRConfiguration, ReplicationMode  # noqa: F401
from dr_engine.models.failover_event import (  # noqa: F401
    FailoverEvent,
    FailoverOutcome,
    FailoverState,
    FailoverTransition,
    TriggerType,
)
from dr_engine.models.health_snapshot import HealthSnapshot, Severity  # noqa: F401
from dr_engine.models.recovery_test import (  # noqa: F401
    RecoveryEnvironment,
    RecoveryTest,
    RecoveryTestStatus,
    ScenarioType,
)
from dr_engine.models.replication import LinkHealth, LinkStatus, ReplicationLink  # noqa: F401
