"""SuperCluster: a small ad-hoc compute cluster.

Masters find workers through UDP broadcast discovery, send them tasks
over HTTP and collect the results asynchronously.
"""

from supercluster.cluster import (
    Command,
    FileTask,
    FunctionTask,
    Master,
    RepositoryTask,
    Role,
    TaskResult,
    Worker,
)
from supercluster.config import ClusterConfig, load_config

__version__ = "0.3.0"

__all__ = [
    "ClusterConfig",
    "Command",
    "FileTask",
    "FunctionTask",
    "Master",
    "RepositoryTask",
    "Role",
    "TaskResult",
    "Worker",
    "load_config",
]
