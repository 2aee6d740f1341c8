#!/usr/bin/env python3
"""
Entry point for the sync supervisor.

Usage:
    python scripts/run_supervisor.py --script ./boot-node.sh

    # Trace logging, custom config:
    SYNC_LOG=trace python scripts/run_supervisor.py -l -s ./boot-node.sh -c config/supervisor.yaml

    # Or in background:
    nohup python scripts/run_supervisor.py -s ./boot-node.sh > logs/supervisor.log 2>&1 &
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sync_supervisor.daemon import main


if __name__ == "__main__":
    sys.exit(main())
