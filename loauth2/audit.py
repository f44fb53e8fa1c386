import json
import logging
import time
from typing import Any

audit_logger = logging.getLogger('loauth2.audit')


def _audit(event: str, **kwargs: Any) -> None:
    # Never pass token values here, only identifiers.
    entry = {'ts': time.time(), 'event': event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))
