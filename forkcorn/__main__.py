"""
forkcorn/__main__.py — Enables `python -m forkcorn` invocation.
"""

import sys
from forkcorn.cli import main

if __name__ == "__main__":
    sys.exit(main())
