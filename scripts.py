#!/usr/bin/env python3
"""Development scripts for Evently Escrow."""

import subprocess
import sys


def start():
    """Start the development server."""
    subprocess.run([
        "uvicorn",
        "evently_escrow.main:app",
        "--host", "0.0.0.0",
        "--port", "3000",
        "--reload"
    ])


def worker():
    """Start a Celery worker with the beat scheduler."""
    subprocess.run([
        "celery",
        "-A", "evently_escrow.tasks.celery_app:celery_app",
        "worker",
        "--beat",
        "--loglevel", "INFO"
    ])


def test():
    """Run the test suite."""
    subprocess.run(["pytest", "tests/"])


def migrate():
    """Apply database migrations."""
    subprocess.run(["alembic", "upgrade", "head"])


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts.py <command>")
        print("Commands: start, worker, test, migrate")
        sys.exit(1)

    command = sys.argv[1].replace("-", "_")
    if hasattr(sys.modules[__name__], command):
        getattr(sys.modules[__name__], command)()
    else:
        print(f"Unknown command: {sys.argv[1]}")
        sys.exit(1)
