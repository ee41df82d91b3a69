"""
Pending Sweep - Stale Payment Check
===================================
Operator tool that walks every account holding pending payments and asks
the gateway for the outcome of the stale ones.

Pending records are never expired or deleted here. A record only leaves
the store when the gateway gives a definite Success or Failure, exactly as
when a user presses "check" in the collection screen.

Features:
- One pass on demand (python -m unpaid_collection.tasks.pending_sweep)
- Optional loop, disabled unless PENDING_SWEEP_ENABLED=true
- Stale threshold from PENDING_STALE_HOURS
- Every check is written to the audit trail with actor="sweep"
"""

import asyncio
from datetime import timedelta
from typing import Dict, Optional

from unpaid_collection.config import CollectionSettings, settings
from unpaid_collection.logging_config import get_logger
from unpaid_collection.pipeline.reconciliation import Reconciler
from unpaid_collection.schemas.collection import CheckFailure, CheckSuccess
from unpaid_collection.storage.pending_store import IPendingPaymentStore

logger = get_logger("pending_sweep")


class PendingSweep:
    """Reconciles stale pending records across all accounts."""

    def __init__(
        self,
        store: IPendingPaymentStore,
        reconciler: Reconciler,
        stale_after: Optional[timedelta] = None,
        config: Optional[CollectionSettings] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.config = config or settings
        self.stale_after = stale_after or timedelta(hours=self.config.pending_stale_hours)
        self.last_summary: Dict[str, int] = {}

    async def run_once(self) -> Dict[str, int]:
        """
        Check every stale record once.

        Returns:
            Counts: accounts, stale, succeeded, failed, unresolved, errors
        """
        summary = {"accounts": 0, "stale": 0, "succeeded": 0, "failed": 0, "unresolved": 0, "errors": 0}

        for account_id in await self.store.list_accounts():
            summary["accounts"] += 1
            for record in await self.store.list(account_id):
                if not record.is_stale(self.stale_after):
                    continue
                summary["stale"] += 1
                log = logger.bind(pym_acnt_id=account_id, order_id=record.order_id)

                try:
                    result = await self.reconciler.reconcile(account_id, record.order_id, actor="sweep")
                except Exception as e:
                    # The record stays; the next pass tries again
                    summary["errors"] += 1
                    log.error("sweep_check_error", error=str(e), error_type=type(e).__name__)
                    continue

                if isinstance(result.outcome, CheckSuccess):
                    summary["succeeded"] += 1
                elif isinstance(result.outcome, CheckFailure):
                    summary["failed"] += 1
                else:
                    summary["unresolved"] += 1
                    log.warning(
                        "stale_pending_unresolved",
                        outcome=result.outcome.kind,
                        amount=record.amount,
                        age_hours=round(record.age().total_seconds() / 3600, 1),
                    )

        self.last_summary = summary
        logger.info("sweep_pass_complete", **summary)
        return summary

    async def run_forever(self) -> None:
        """Loop for deployments that opt in. Returns immediately when disabled."""
        logger.info(
            "sweep_loop_started",
            enabled=self.config.sweep_enabled,
            interval=self.config.sweep_interval_seconds,
            stale_hours=self.config.pending_stale_hours,
        )

        if not self.config.sweep_enabled:
            logger.info("sweep_loop_disabled")
            return

        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("sweep_loop_error", error=str(e))

            await asyncio.sleep(self.config.sweep_interval_seconds)


# =============================================================================
# HEALTH CHECK
# =============================================================================

async def get_sweep_stats(store: IPendingPaymentStore, config: Optional[CollectionSettings] = None) -> dict:
    """Pending and stale counts for monitoring"""
    config = config or settings
    stale_after = timedelta(hours=config.pending_stale_hours)
    pending = stale = 0
    for account_id in await store.list_accounts():
        records = await store.list(account_id)
        pending += len(records)
        stale += sum(1 for r in records if r.is_stale(stale_after))

    return {
        "enabled": config.sweep_enabled,
        "interval_seconds": config.sweep_interval_seconds,
        "stale_hours": config.pending_stale_hours,
        "pending": pending,
        "stale": stale,
    }


if __name__ == "__main__":
    async def main():
        from unpaid_collection.services.api_client import CollectionApiClient
        from unpaid_collection.services.gateway_client import PaymentGatewayClient
        from unpaid_collection.storage import JsonFileKeyValueBackend, PendingPaymentStore

        store = PendingPaymentStore(JsonFileKeyValueBackend(settings.pending_dir))
        async with CollectionApiClient() as client:
            reconciler = Reconciler(store, PaymentGatewayClient(client))
            summary = await PendingSweep(store, reconciler).run_once()
        print(f"Sweep summary: {summary}")

    asyncio.run(main())
