"""Change notification fan-out between the store and connected sessions."""

from foamsync.realtime.broker import (
    Broker,
    MemoryBroker,
    RedisBroker,
    broadcast_work_order_update,
    crew_channel,
    get_broker,
    org_channel,
    publish_change,
)
from foamsync.realtime.dedup import Deduplicator

__all__ = [
    "Broker",
    "MemoryBroker",
    "RedisBroker",
    "Deduplicator",
    "broadcast_work_order_update",
    "crew_channel",
    "get_broker",
    "org_channel",
    "publish_change",
]
