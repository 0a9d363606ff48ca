import csv
import os
import time

from app.core.config import settings

HEADER = ["timestamp", "event_type", "session_id", "outcome", "latency_ms"]


def log_event(event_type: str, session_id: str, outcome: str, latency_ms: int = 0, log_file: str | None = None):
    path = log_file or settings.EVENT_LOG_FILE
    if not path:
        return

    # Initialize CSV with headers if it doesn't exist
    write_header = not os.path.exists(path)
    with open(path, "a", newline="") as f:
        writer = csv.writer(f)
        if write_header:
            writer.writerow(HEADER)
        writer.writerow([time.time(), event_type, session_id, outcome, latency_ms])
