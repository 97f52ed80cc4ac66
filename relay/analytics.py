"""
Time-windowed usage statistics per tenant.

Statistics are derived from the tenant log on every call; nothing is
aggregated ahead of time. Window boundaries use the clock's wall-clock time
(server-local by default):

- today: start of the current local calendar day
- week: rolling 7 x 24h window ending now
- month: start of the first day of the current local month

Calendar starts take the UTC offset in force at that midnight, which differs
from the current one across a daylight-saving change.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from relay.models import AnalyticsSnapshot, Direction, Message, WindowStats
from relay.storage import MessageStore

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    """Current server-local wall-clock time (naive)."""
    return datetime.now()


def wall_clock_start(now: datetime, day: int) -> datetime:
    """
    Midnight at the start of ``day`` in the month of ``now``, as an aware datetime.

    A naive ``now`` is server-local wall-clock time, resolved with the offset in
    force at that midnight. An aware ``now`` keeps its tzinfo, so a zoneinfo
    clock also gets the offset of the midnight rather than the current one.
    """
    start = now.replace(day=day, hour=0, minute=0, second=0, microsecond=0)
    if start.tzinfo is None:
        return start.astimezone()
    return start


def window_stats(messages: Iterable[Message], start: datetime) -> WindowStats:
    """Aggregate the messages with timestamp >= start."""
    count = inbound = outbound = 0
    clients = set()
    for message in messages:
        if message.timestamp < start:
            continue
        count += 1
        clients.add(message.counterparty)
        if message.direction is Direction.INBOUND:
            inbound += 1
        else:
            outbound += 1
    return WindowStats(messages=count, clients=len(clients), inbound=inbound, outbound=outbound)


class AnalyticsEngine:
    def __init__(self, store: MessageStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or local_now

    def compute_analytics(self, tenant_id: str) -> AnalyticsSnapshot:
        """
        Compute the analytics snapshot for a tenant.

        Args:
            tenant_id: Tenant identifier

        Returns:
            AnalyticsSnapshot with totals and today/week/month aggregates
        """
        messages = self.store.all_for_tenant(tenant_id)
        now = self.clock()

        today_start = wall_clock_start(now, now.day)
        month_start = wall_clock_start(now, 1)
        week_start = now.astimezone(timezone.utc) - timedelta(days=7)

        snapshot = AnalyticsSnapshot(
            total_messages=len(messages),
            total_clients=len({message.counterparty for message in messages}),
            today=window_stats(messages, today_start),
            week=window_stats(messages, week_start),
            month=window_stats(messages, month_start),
        )
        logger.info(
            f"Analytics computed for tenant={tenant_id}: {snapshot.total_messages} messages, "
            f"{snapshot.total_clients} clients"
        )
        return snapshot
