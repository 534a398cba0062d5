#!/usr/bin/env python3
"""
Bank Node Entry Point

Starts the bank node with configuration from BANK_NODE_* environment
variables, .env, or the JSON file given with --config.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from bank_node.__main__ import main


if __name__ == "__main__":
    sys.exit(main())
