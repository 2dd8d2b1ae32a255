"""
Root pytest configuration.

Puts the repository root on sys.path so `src.*` and `tests.helpers`
import without an editable install.
"""

import sys
from pathlib import Path

ROOT = str(Path(__file__).resolve().parent)

if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
