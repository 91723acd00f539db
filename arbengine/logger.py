# arbengine/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from datetime import datetime, timezone
from typing import Optional
from .models import TradeRecord

AUDIT_HEADER = ["timestamp", "venue", "symbol", "side", "amount", "price", "success", "error"]

class AsyncAuditLogger:
    """
    CSV audit trail of every order attempt, filled or failed.
    Rows are queued by the order path and appended by a background task.
    """
    def __init__(self, filepath: str, logger: Optional[logging.Logger] = None):
        self.filepath = filepath
        self.logger = logger or logging.getLogger(__name__)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task = None

    async def start(self):
        """
        Creates the log file (with header if missing) and starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            if is_new:
                await AsyncWriter(f, dialect='unix').writerow(AUDIT_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_trade(self, trade: TradeRecord):
        """
        Non-blocking call to add a trade attempt to the queue.
        """
        await self._queue.put([
            datetime.fromtimestamp(trade.timestamp, tz=timezone.utc).isoformat(),
            trade.venue,
            trade.symbol,
            trade.side.value,
            f"{trade.amount:.8f}",
            f"{trade.price:.8f}",
            trade.success,
            trade.error or "",
        ])

    async def stop(self):
        """Waits for queued rows to hit the disk, then stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def _writer_worker(self):
        """
        Appends queued rows one at a time; a failed append is logged and the row dropped.
        """
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # The store row is already written
                self.logger.error(f"AUDIT LOG FAILURE: {e}")
            finally:
                self._queue.task_done()

def setup_console_logger(name: str, level: str = "INFO"):
    """
    Engine logger writing to stdout. Calling it again only changes the level.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
