"""Entry point of spawned offload worker processes."""

import logging
import os
import sys

from offload.bootstrap import main

if __name__ == "__main__":
    exit_code: int = main()
    logging.shutdown()
    sys.stdout.flush()
    sys.stderr.flush()
    # Threads started by tasks must not outlive the host channel.
    os._exit(exit_code)
