# Make `core` and `utils` importable as top-level directories, the way
# main.py imports them when run from the repository root.
import os
import sys

PROJECT_ROOT = os.path.dirname(__file__)

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
