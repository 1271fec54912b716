# src/capsup/util/retry.py: Backoff delay calculation.
# Recovery waits between a crash and the next restart. The delay is either
# constant or grows exponentially with the number of consecutive crashes, with
# optional jitter so several supervisors on one host do not restart in lockstep.

import random

def backoff_delay(attempt, base_seconds, max_seconds=None, strategy="exponential", jitter=0.0):
    """
    Delay before retry number `attempt` (1-based).

    `jitter` is a fraction of the computed delay added at random, e.g. 0.2
    adds up to 20%.
    """
    attempt = max(attempt, 1)
    if strategy == "constant":
        delay = base_seconds
    else:
        delay = base_seconds * 2 ** (attempt - 1)
    if max_seconds is not None:
        delay = min(delay, max_seconds)
    if jitter:
        delay += random.uniform(0, delay * jitter)
    return delay
