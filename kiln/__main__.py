"""
Entry point for running kiln as a module: python -m kiln
"""

import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
