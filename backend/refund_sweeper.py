"""
Background sweep that returns the balance of expired, unclaimed cards.

- Runs every `refund_sweep_interval_minutes` (min 1) in a daemon thread.
- Cards with a refund wallet are refunded on-chain; the rest are flagged for an operator.
- Disabled unless `refund_sweep_enabled` is set.
"""

import threading
import time
from typing import Optional

SWEEP_BATCH_SIZE = 50
_SWEEPER_THREAD: Optional[threading.Thread] = None


def run_sweep_once(card_engine, logger, batch_size: int = SWEEP_BATCH_SIZE) -> dict:
    started = time.time()
    counts = card_engine.sweep_expired_cards(limit=batch_size)
    if logger:
        logger.info(
            "refund_sweep_complete refunded=%s manual_review=%s skipped=%s failed=%s duration=%.2fs",
            counts.get("refunded", 0),
            counts.get("manual_review", 0),
            counts.get("skipped", 0),
            counts.get("failed", 0),
            time.time() - started,
        )
    return counts


def start_refund_sweeper(card_engine, settings, logger):
    """Start the sweeper in a daemon thread."""
    global _SWEEPER_THREAD
    if _SWEEPER_THREAD is not None:
        return
    if not getattr(settings, "refund_sweep_enabled", False):
        if logger:
            logger.info("refund_sweeper_disabled")
        return
    interval_seconds = max(1, int(getattr(settings, "refund_sweep_interval_minutes", 10) or 10)) * 60

    def _loop():
        while True:
            try:
                run_sweep_once(card_engine, logger)
            except Exception as exc:  # noqa: BLE001
                if logger:
                    logger.warning("refund_sweep_loop_failed error=%s", exc, exc_info=True)
            time.sleep(interval_seconds)

    _SWEEPER_THREAD = threading.Thread(target=_loop, daemon=True, name="refund-sweeper")
    _SWEEPER_THREAD.start()
    if logger:
        logger.info("refund_sweeper_started interval_seconds=%s", interval_seconds)
