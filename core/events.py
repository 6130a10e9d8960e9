from __future__ import annotations

import json
import logging
from typing import Any, Optional


class EventBus:
    def __init__(
        self,
        *,
        structured_logs: bool,
        debug_logging: bool,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.structured_logs = structured_logs
        self.debug_logging = debug_logging
        self.logger = logger or logging.getLogger('media_maintainer.events')

    def log(self, event: str, **fields: Any) -> None:
        payload = {'event': event, **fields}
        if self.structured_logs:
            self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))
        else:
            detail = ' '.join(f'{k}={v}' for k, v in fields.items())
            self.logger.info(f'{event}: {detail}' if detail else event)

    def emit(self, event: str, *, reason: Optional[str] = None, **fields: Any) -> None:
        if reason is not None:
            fields.setdefault('reason', reason)
        self.log(event, **fields)


def make_event_logger(name: str = 'media_maintainer.events') -> logging.Logger:
    """A non-propagating logger with its own handler so events are never duplicated by the root."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
        logger.addHandler(handler)
    return logger
