import asyncio
import json
import time

import redis

from shift_guardian.config import NOTIFY_STREAM, REDIS_URL
from shift_guardian.logging_config import get_logger

logger = get_logger("notifier", "notifier.log")


class Notifier:
    """Hands an event to whoever delivers dispatcher notifications."""

    async def notify(self, company_id: int, event: dict, recipient_role: str = "dispatcher") -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    async def notify(self, company_id, event, recipient_role="dispatcher"):
        logger.info(f"[notify] company={company_id} role={recipient_role} event={event.get('type')}")


class RedisNotifier(Notifier):
    """
    Appends events to a Redis stream; a separate delivery service consumes it
    (email / SMS / push are not handled here).
    """

    def __init__(self, url: str = REDIS_URL, stream: str = NOTIFY_STREAM):
        # Redis connection (binary mode)
        self.r = redis.from_url(url, decode_responses=False)
        self.stream = stream

    async def notify(self, company_id, event, recipient_role="dispatcher"):
        json_str = json.dumps(
            {"company_id": company_id, "recipient_role": recipient_role, "event": event},
            ensure_ascii=False,
            default=str,
        )

        # Push to Redis inside executor (non-blocking)
        await asyncio.get_running_loop().run_in_executor(
            None,
            self.r.xadd,
            self.stream,
            {"ts": time.time(), "data": json_str},
        )
        logger.info(f"[notify] queued {event.get('type')} for company={company_id}")
