"""SuperCluster cluster layer: discovery, membership and task dispatch.

Two roles:
  - master: discovers workers and dispatches tasks to them.
  - worker: executes function, file and repository tasks and posts the
            results back to the master that sent them.
"""

from supercluster.cluster.master import DispatchReceipt, Master
from supercluster.cluster.models import (
    Command,
    FileTask,
    FunctionTask,
    PeerInfo,
    RepositoryTask,
    Role,
    TaskEnvelope,
    TaskResult,
)
from supercluster.cluster.registry import MembershipRegistry
from supercluster.cluster.worker import Worker

__all__ = [
    "Command",
    "DispatchReceipt",
    "FileTask",
    "FunctionTask",
    "Master",
    "MembershipRegistry",
    "PeerInfo",
    "RepositoryTask",
    "Role",
    "TaskEnvelope",
    "TaskResult",
    "Worker",
]
