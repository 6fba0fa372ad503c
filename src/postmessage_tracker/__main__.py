"""
Package entrypoint for running as a module: `python -m postmessage_tracker`
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
