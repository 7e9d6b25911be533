#!/usr/bin/env python
"""Apply the docs schema: `python scripts/run_migrations.py [revision]` (defaults to head)."""

from __future__ import annotations

import os
import sys

from alembic.config import main as alembic_main

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def run(revision: str = "head"):
    """Upgrade the docs database to ``revision`` using the repo's alembic.ini."""
    alembic_main(argv=["-c", os.path.join(ROOT_DIR, "alembic.ini"), "upgrade", revision])


if __name__ == "__main__":
    run(sys.argv[1] if len(sys.argv) > 1 else "head")
