# classes/webhook_log_recorder.py

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from classes.google_helpers import logger

WEBHOOK_LOGS_COLLECTION = "webhook_logs"


def record_webhook_log(
    db,
    event_type: str,
    data: Dict[str, Any],
    *,
    source: str,
) -> Optional[str]:
    """
    Append an audit record to webhook_logs and return its document id.

    Audit writes never fail the webhook: errors are logged and None is returned.
    """
    try:
        _, ref = db.collection(WEBHOOK_LOGS_COLLECTION).add(
            {
                "eventType": event_type,
                "data": data,
                "timestamp": datetime.now(timezone.utc),
                "source": source,
            }
        )
        return ref.id
    except Exception:
        logger.exception(f"[{source} Webhook] Failed to log event {event_type}")
        return None
