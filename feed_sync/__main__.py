"""Main module for feed_sync.

This module allows the CLI to be run as a Python module using:
python -m feed_sync

It delegates to the application's main command group.
"""

from feed_sync.app import main

if __name__ == "__main__":
    main()
