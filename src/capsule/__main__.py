"""
Capsule - Entry point for "python -m capsule".

Created by orpheus497
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
