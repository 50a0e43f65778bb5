#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

    import engagement.main
    print("Import engagement.main: OK")

    import engagement.jobs.cli
    print("Import engagement.jobs.cli: OK")

    import engagement.queue.jobs
    print("Import engagement.queue.jobs: OK")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
