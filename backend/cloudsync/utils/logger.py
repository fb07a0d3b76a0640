import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("cloud_sync")


def mask_connection_string(connection_string: Optional[str]) -> str:
    """Render a connection string with the password hidden.

    Used whenever a log line has to name the remote target. Raw connection
    strings must never reach the logs.
    """
    if not connection_string:
        return "<none>"
    try:
        return make_url(connection_string).render_as_string(hide_password=True)
    except (ArgumentError, ValueError):
        return "<unparseable connection string>"


class CloudSyncEventLogger:

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.max_events = 1000

    def log_sync_event(
        self,
        event_type: str,
        description: str,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ) -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "job_id": job_id,
            "details": details,
            "status": status,
            "error": error,
        }

        self.events.append(entry)

        if len(self.events) > self.max_events:
            self.events.pop(0)

        log_msg = f"[{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return entry

    def get_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit:
            return self.events[-limit:]
        return self.events

    def clear_events(self):
        self.events = []
        logger.info("Cleared cloud sync events")


sync_event_logger = CloudSyncEventLogger()
