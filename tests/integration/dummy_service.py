import os
import sys
import time


def main():
    print("Dummy service starting...", flush=True)
    for key in ("DEBUG", "APP_ENV", "DB_HOST", "PORT", "HOMESTACK_PROJECT"):
        print(f"{key}: {os.environ.get(key)}", flush=True)

    # Simulate work
    duration = float(os.environ.get("DUMMY_DURATION", "5"))
    deadline = time.time() + duration
    i = 0
    while time.time() < deadline:
        print(f"Working... {i}", flush=True)
        i += 1
        time.sleep(0.5)

    print("Dummy service finishing.", flush=True)
    sys.exit(int(os.environ.get("DUMMY_EXIT_CODE", "0")))


if __name__ == "__main__":
    main()
