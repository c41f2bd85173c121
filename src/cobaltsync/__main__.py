"""
Entry point for running cobaltsync as a module.

Usage:
    python -m cobaltsync [command] [options]
"""

from cobaltsync.cli import main

if __name__ == "__main__":
    main()
