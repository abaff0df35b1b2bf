# services/push_ids.py
import random
import threading
import time

# 64 characters in ASCII order so keys sort lexicographically by time
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_lock = threading.Lock()
_last_push_time = 0
_last_rand_chars = [0] * 12


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_push_id(timestamp_ms: int = None) -> str:
    """
    Allocate a unique, lexicographically time-ordered 20-character key.

    The first 8 characters encode the millisecond timestamp, the last 12 are
    random. Keys generated in the same millisecond reuse the previous random
    part incremented by one, so they stay strictly increasing.
    """
    global _last_push_time
    ts = now_ms() if timestamp_ms is None else timestamp_ms

    with _lock:
        duplicate_time = ts == _last_push_time
        _last_push_time = ts

        time_chars = []
        t = ts
        for _ in range(8):
            time_chars.append(PUSH_CHARS[t % 64])
            t //= 64
        if t != 0:
            raise ValueError("timestamp out of range for push id")
        time_part = "".join(reversed(time_chars))

        if not duplicate_time:
            for i in range(12):
                _last_rand_chars[i] = random.randrange(64)
        else:
            i = 11
            while i >= 0 and _last_rand_chars[i] == 63:
                _last_rand_chars[i] = 0
                i -= 1
            if i >= 0:
                _last_rand_chars[i] += 1

        return time_part + "".join(PUSH_CHARS[c] for c in _last_rand_chars)


def push_id_timestamp(push_id: str) -> int:
    """Decode the millisecond timestamp from the first 8 characters of a push id."""
    ts = 0
    for ch in push_id[:8]:
        ts = ts * 64 + PUSH_CHARS.index(ch)
    return ts
