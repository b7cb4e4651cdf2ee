#!/usr/bin/env python3
"""
Bike Rental System Entry Point

Starts the interactive admin console with the configured storage backend.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from bike_rental.__main__ import main


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
