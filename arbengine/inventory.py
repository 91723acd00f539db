import asyncio
import logging
import time
from typing import Dict, List
from .models import BalanceSnapshot

class InventoryEngine:
    def __init__(self, venues: Dict[str, object], store, logger: logging.Logger):
        self.venues = venues
        self.store = store
        self.logger = logger
        # { 'binance': {'USDT': 100, 'SOL': 1.5} }
        self.state: Dict[str, Dict[str, float]] = {}

    async def update_balances(self) -> List[BalanceSnapshot]:
        names = list(self.venues.keys())
        results = await asyncio.gather(*(self.venues[n].get_balance() for n in names), return_exceptions=True)

        now = time.time()
        snapshots = []
        for name, res in zip(names, results):
            if isinstance(res, BaseException):
                self.logger.error(f"Balance fetch failed on {name}: {res}")
                continue

            # Keep non-zero balances only
            clean_bal = {k: v for k, v in res.items() if v > 0}
            self.state[name] = clean_bal
            snapshots.extend(BalanceSnapshot(name, asset, amount, now) for asset, amount in clean_bal.items())

        if snapshots:
            await asyncio.to_thread(self.store.insert_balances, snapshots)
        return snapshots
