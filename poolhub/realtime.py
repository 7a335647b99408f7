import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List

from poolhub.logging_config import get_logger

logger = get_logger(__name__)

ALL_POOLS_CHANNEL = "pools"
SYNC_CHANNEL = "sync"


def pool_channel(pool_id: str) -> str:
    return f"pool:{pool_id}"


def chat_channel(pool_id: str) -> str:
    return f"chat:{pool_id}"


class Broadcaster:
    """
    In-process fan-out of change notifications.

    Events only tell subscribers that something changed; subscribers re-read
    authoritative state themselves. A failing subscriber is logged and does not
    stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable]] = defaultdict(list)

    def subscribe(self, channel: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        self._subscribers[channel].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers.get(channel, []):
                self._subscribers[channel].remove(callback)

        return unsubscribe

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def publish(self, channel: str, event: Any = None) -> None:
        for callback in list(self._subscribers.get(channel, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber failed channel=%s", channel)
