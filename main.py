"""
smartnotify — per-user smart notification engine.
Entry point when running from a checkout.
"""

import faulthandler
import sys
from pathlib import Path

faulthandler.enable()

# Ensure smartnotify is importable without installing
sys.path.insert(0, str(Path(__file__).resolve().parent))

from smartnotify.cli import main


if __name__ == "__main__":
    sys.exit(main())


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Lets you run "python main.py <command>" from the repo root. All real
#   work lives in smartnotify.cli, which is also the installed console
#   script.
#
# Key points:
#   - sys.path manipulation: imports work whether or not the package is
#     installed.
#   - faulthandler: a crash inside Qt still prints a Python traceback.
