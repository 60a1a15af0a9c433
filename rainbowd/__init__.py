"""rainbowd: zero-downtime redeploys for a single-host backend.

Runnable, single-process daemon that:
 - spawns a fresh backend process on an ephemeral port
 - waits for it to become ready (health polling or a warmup timer)
 - atomically switches the proxied traffic over to it
 - drains and terminates the previous backend

The implementation is intentionally small so it can be audited and explained.
"""

__version__ = "0.3.0"
