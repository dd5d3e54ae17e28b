"""
Background Workers for the escrow marketplace

Workers:
- auto_release_worker: periodically releases held escrow whose post-delivery
  hold period elapsed without a dispute
"""

from escrow_market.workers.auto_release_worker import (
    get_worker_status,
    run_auto_release_once,
    run_auto_release_worker_loop,
)

__all__ = [
    "get_worker_status",
    "run_auto_release_once",
    "run_auto_release_worker_loop",
]
