from ._schema import ANALYTICS_SCHEMA_SQL, ANALYTICS_SCHEMA_VERSION, SCHEMA_SQL, SCHEMA_VERSION
from .action_queue import ActionQueueRepo
from .analytics import AnalyticsRepo
from .automation import AutomationQueueRepo, AutomationStateRepo
from .raw_transactions import RawTransactionRepo
from .rounds import RoundRepo
from .staged import StagedDeploymentRepo
from .workflow import WorkflowRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "ANALYTICS_SCHEMA_SQL",
    "ANALYTICS_SCHEMA_VERSION",
    "RoundRepo",
    "WorkflowRepo",
    "RawTransactionRepo",
    "StagedDeploymentRepo",
    "ActionQueueRepo",
    "AutomationQueueRepo",
    "AutomationStateRepo",
    "AnalyticsRepo",
    "StorageManager",
]
