#!/usr/bin/env python3
import sys

from engagement.jobs.cli import weekly_main

if __name__ == "__main__":
    sys.exit(weekly_main(sys.argv[1:]))
