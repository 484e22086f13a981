"""Best-effort hand-off of completed trips to the durable order store."""

import logging
from typing import Any, Dict

from asgiref.sync import sync_to_async

from .tasks import persist_trip_summary_task

logger = logging.getLogger(__name__)


async def archive_trip_summary(summary: Dict[str, Any]) -> bool:
    """
    Queue a completed trip for persistence.

    Never raises: a broker or database failure is logged and reported as
    False, and the trip stays delivered from the coordinator's point of view.
    """
    try:
        await sync_to_async(persist_trip_summary_task.delay)(summary)
    except Exception:
        logger.exception("Could not queue persistence for trip %s", summary.get("booking_id"))
        return False
    return True
