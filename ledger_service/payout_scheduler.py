"""
Daily payout run.

    python -m ledger_service.payout_scheduler            # run at PAYOUT_RUN_AT every day
    python -m ledger_service.payout_scheduler --run-now  # one cycle, then exit
"""
import logging
import sys
import time
from typing import List, Optional

import schedule

from common.settings import Settings, settings as default_settings
from ledger_service.db import connect
from ledger_service.models import Payout
from ledger_service.payment_rail import create_payment_rail
from ledger_service.service import MarketplaceLedger

logger = logging.getLogger(__name__)


def run_cycle(ledger: MarketplaceLedger) -> List[Payout]:
    started = time.monotonic()
    try:
        payouts = ledger.run_payout_cycle()
    except Exception:
        # keep the scheduler alive; the next run retries every eligible vendor
        logger.exception("Payout cycle aborted")
        return []

    total = sum(p.amount for p in payouts)
    logger.info(f"Payout cycle finished: {len(payouts)} payouts totalling {total} in {time.monotonic() - started:.1f}s")
    return payouts


def schedule_payouts(ledger: MarketplaceLedger, settings: Optional[Settings] = None,
                     scheduler: Optional[schedule.Scheduler] = None) -> schedule.Job:
    """Register the daily payout cycle"""
    cfg = settings or default_settings
    scheduler = scheduler or schedule.default_scheduler
    job = scheduler.every().day.at(cfg.payout_run_at).do(run_cycle, ledger)
    logger.info(f"Payout schedule configured: daily at {cfg.payout_run_at}")
    return job


def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    db = connect(settings=default_settings)
    ledger = MarketplaceLedger(db, rail=create_payment_rail(default_settings), settings=default_settings)

    try:
        if "--run-now" in argv:
            run_cycle(ledger)
            return

        schedule_payouts(ledger)
        logger.info("Payout scheduler started. Press Ctrl+C to stop.")
        try:
            while True:
                schedule.run_pending()
                time.sleep(30)
        except KeyboardInterrupt:
            logger.info("Payout scheduler stopped.")
    finally:
        db.dispose()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    main()
