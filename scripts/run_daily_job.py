#!/usr/bin/env python3
import sys

from engagement.jobs.cli import daily_main

if __name__ == "__main__":
    sys.exit(daily_main(sys.argv[1:]))
