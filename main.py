# main.py
# Process entry point: python main.py (or the minecraft-watcher console script).
from __future__ import annotations

import sys

from lifecycle.controller import main

if __name__ == "__main__":
    sys.exit(main())
