"""
Run the story pipeline from a source checkout.

Usage:
    python scripts/run_pipeline.py --auto-generate 3
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from wholesome_library.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
