#!/usr/bin/env python3
"""Startup script to run every perpetual hodwatch component side by side."""

import subprocess
import sys
import time

# Order matters only for the first few seconds: snapshots and trades
# populate market_data, the low-float filter builds the watch-list that
# the scanner reads.
COMPONENTS = ["snapshots", "stream", "low-float", "scan"]


def main():
    processes: dict[str, subprocess.Popen] = {}

    for component in COMPONENTS:
        print(f"Starting {component}...", flush=True)
        processes[component] = subprocess.Popen(
            [sys.executable, "-m", "hodwatch.main", component],
            stdout=sys.stdout,
            stderr=sys.stderr,
        )
        time.sleep(1)

    # Wait for any process to exit
    try:
        while True:
            exited = {name: p.poll() for name, p in processes.items() if p.poll() is not None}
            if exited:
                for name, code in exited.items():
                    print(f"{name} exited with code {code}", flush=True)
                break

            time.sleep(1)
    except KeyboardInterrupt:
        print("Received interrupt, shutting down...", flush=True)
    finally:
        for process in processes.values():
            if process.poll() is None:
                process.terminate()
        for process in processes.values():
            process.wait()
        print("Shutdown complete", flush=True)


if __name__ == "__main__":
    main()
