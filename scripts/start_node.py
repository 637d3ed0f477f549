#!/usr/bin/env python3
"""Start a SuperCluster master or worker from a source checkout.

Usage:
    python scripts/start_node.py worker
    python scripts/start_node.py master --port 44402 --log-level debug

Configuration:
    The node reads config/supercluster.yaml when present. Environment
    variables override YAML configuration:
      - SUPERCLUSTER_DISCOVERY_PORT: UDP discovery port
      - SUPERCLUSTER_ANNOUNCE_INTERVAL_MS: announcement interval
      - SUPERCLUSTER_MASTER_PORT / SUPERCLUSTER_WORKER_PORT: REST API ports
      - SUPERCLUSTER_STAGING_DIR / SUPERCLUSTER_WORK_DIR: worker directories
      - SUPERCLUSTER_LOG_LEVEL: log level
"""

import os
import sys

# Ensure project root is on path so `from supercluster.…` works
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from supercluster.cli import main


if __name__ == "__main__":
    main()
