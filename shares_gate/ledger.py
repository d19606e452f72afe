import logging
from decimal import Decimal
from typing import Optional

from .models import LedgerTransition, TradeEvent
from .storage import Storage

logger = logging.getLogger(__name__)


class LedgerService:
    """Applies decoded trades to the ledger store.

    Every mutation runs as one transaction together with the event-key claim,
    so replaying a batch after a crash leaves balances untouched (the replayed
    calls return None).
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    def apply(self, chain_type: str, event: TradeEvent) -> Optional[LedgerTransition]:
        if event.amount < 0:
            raise ValueError(f"negative trade amount: {event.amount}")
        if event.is_buy:
            return self.apply_buy(event.trader, event.subject, chain_type, event.amount, event.event_key)
        return self.apply_sell(event.trader, event.subject, chain_type, event.amount, event.event_key)

    def apply_buy(
        self,
        trader: str,
        subject: str,
        chain_type: str,
        amount: int,
        event_key: Optional[str] = None,
    ) -> Optional[LedgerTransition]:
        transition = self.storage.apply_buy(chain_type, trader, subject, Decimal(amount), event_key)
        if transition is None:
            logger.info("skipping already applied %s event %s", chain_type, event_key)
            return None
        logger.info(
            "%s buy: trader=%s subject=%s amount=%s balance=%s",
            chain_type, trader, subject, amount, transition.balance,
        )
        return transition

    def apply_sell(
        self,
        trader: str,
        subject: str,
        chain_type: str,
        amount: int,
        event_key: Optional[str] = None,
    ) -> Optional[LedgerTransition]:
        transition = self.storage.apply_sell(chain_type, trader, subject, Decimal(amount), event_key)
        if transition is None:
            logger.info("skipping already applied %s event %s", chain_type, event_key)
            return None
        if not transition.found:
            logger.warning(
                "Trade record not found: trader=%s, subject=%s, chain=%s",
                trader, subject, chain_type,
            )
            return transition
        if transition.clamped:
            logger.warning(
                "sell of %s exceeds balance %s for trader=%s subject=%s chain=%s; clamped to 0",
                amount, transition.previous, trader, subject, chain_type,
            )
        logger.info(
            "%s sell: trader=%s subject=%s amount=%s balance=%s",
            chain_type, trader, subject, amount, transition.balance,
        )
        return transition
