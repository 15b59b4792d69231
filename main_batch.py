#!/usr/bin/env python3
"""
StreamSub Batch Processing Entry Point

Transcribes every audio file found in the given folders, one at a time,
either fully or only their opening seconds.
"""

import sys
from streamsub.batch_cli import run_batch_processing

if __name__ == "__main__":
    if sys.version_info < (3, 9):
        sys.stderr.write("StreamSub requires Python 3.9 or later.\n")
        sys.exit(1)

    run_batch_processing()
