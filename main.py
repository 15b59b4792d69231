#!/usr/bin/env python3
"""
StreamSub Entry Point Script

Transcribes one audio file, resuming from any saved progress.
"""

import sys
from streamsub.cli import CLIHandler

if __name__ == "__main__":
    if sys.version_info < (3, 9):
        sys.stderr.write("StreamSub requires Python 3.9 or later.\n")
        sys.exit(1)

    cli = CLIHandler()
    cli.run()
