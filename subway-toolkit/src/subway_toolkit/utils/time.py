import time


def get_current_timestamp() -> int:
    """Milliseconds since the epoch, the unit every 'created_at' field uses."""
    return time.time_ns() // 1_000_000
