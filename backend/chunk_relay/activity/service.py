"""Day-bucketed activity log.

Every protocol action worth auditing (CREATE, JOIN, COMPLETE, DISCONNECT)
is appended as a single JSON line to ``{log_dir}/{YYYY-MM-DD}.log``:

    {"timestamp": "2026-01-31T12:00:00.000000+00:00", "action": "JOIN",
     "transferId": "abc-123", "socketId": "5f0c..."}

The log is a fire-and-forget sink. A failed write is reported through the
module logger and otherwise ignored; it never fails the protocol operation
that triggered it.

Usage:
    activity = ActivityLog(log_dir="./logs")
    await activity.record(ActivityAction.CREATE, "abc-123", connection_id)
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class ActivityAction(str, Enum):
    """Actions recorded in the activity log."""
    CREATE = "CREATE"
    JOIN = "JOIN"
    COMPLETE = "COMPLETE"
    DISCONNECT = "DISCONNECT"


class ActivityLog:
    """Appends activity records to one log file per UTC day.

    Attributes:
        log_dir: Directory holding the ``YYYY-MM-DD.log`` files.
        enabled: When False, ``record`` does nothing.
    """

    def __init__(self, log_dir: Union[str, Path], enabled: bool = True) -> None:
        self.log_dir = Path(log_dir)
        self.enabled = enabled

    def log_file_for(self, when: datetime) -> Path:
        """Get the log file that records made at *when* are appended to."""
        return self.log_dir / f"{when.date().isoformat()}.log"

    async def record(
        self,
        action: ActivityAction,
        transfer_id: str,
        connection_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Append one activity record.

        Args:
            action: The protocol action being recorded.
            transfer_id: Transfer the action applies to.
            connection_id: Connection that triggered the action.
            now: Timestamp override (defaults to the current UTC time).
        """
        if not self.enabled:
            return

        when = now or datetime.now(timezone.utc)
        entry = {
            "timestamp": when.isoformat(),
            "action": ActivityAction(action).value,
            "transferId": transfer_id,
            "socketId": connection_id,
        }

        try:
            await aiofiles.os.makedirs(self.log_dir, exist_ok=True)
            async with aiofiles.open(self.log_file_for(when), "a", encoding="utf-8") as f:
                await f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.error(f"Error writing activity log: {e}")
