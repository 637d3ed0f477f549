"""Example masters for each task variant.

Start one or more workers first (``python scripts/start_node.py worker``),
then run one of:

    python examples/master_examples.py function
    python examples/master_examples.py file
    python examples/master_examples.py repository

Each example waits for workers to be discovered, sends them a task as
they appear and prints the results as they come back.
"""

import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from supercluster import Command, FileTask, Master, RepositoryTask, TaskResult, load_config
from supercluster.cluster.models import PeerInfo
from supercluster.log import configure_logging


def greet(first, second, value):
    print(f"Hello {first} {second}!")
    return value


def build_task(kind: str):
    if kind == "function":
        return greet, ["distributed", "world", "hmm"]
    if kind == "file":
        script = Path(__file__).with_name("hello.sh")
        return FileTask.from_path(script, args=["--port", "9997"]), None
    if kind == "repository":
        return (
            RepositoryTask(
                owner="octocat",
                repo="Hello-World",
                main_command=Command(program="cat", args=["README"]),
                post_commands=[Command(program="git", args=["log", "-1", "--oneline"])],
            ),
            None,
        )
    raise SystemExit(f"unknown example: {kind}")


async def run_example(kind: str, runtime: float = 30.0) -> None:
    task, args = build_task(kind)
    master = Master(load_config())

    async def on_worker(name: str, worker: PeerInfo, reason: str) -> None:
        print(f"worker available: {worker.id} ({reason})")
        try:
            receipt = await master.dispatch(worker.id, task, args)
        except Exception as e:
            print(f"dispatch to {worker.id} failed: {e}")
            return
        print(f"task {receipt.task_id} acknowledged: {receipt.acknowledgement}")

    def on_complete(result: TaskResult) -> None:
        print(f"task {result.task_id} from {result.envelope.target_peer.id}:")
        print(f"  success={result.success} error={result.error_message}")
        print(f"  output={result.output!r}")

    master.on("worker_available", on_worker)
    master.on("task_complete", on_complete)

    async with master:
        await asyncio.sleep(runtime)


if __name__ == "__main__":
    configure_logging("info")
    asyncio.run(run_example(sys.argv[1] if len(sys.argv) > 1 else "function"))
