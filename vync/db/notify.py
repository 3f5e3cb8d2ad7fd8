"""
Change feed - insert/update notifications for `videos` and `video_analyses`.

`ChangeFeed` fans events out to in-process subscribers. `PostgresChangeFeed`
fills it from PostgreSQL LISTEN/NOTIFY (see the triggers in
`vync.db.database.init_db`), either on an asyncio loop (status clients) or
with a blocking wait (dispatcher worker).
"""
import asyncio
import json
import logging
import select
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from sqlalchemy.engine import make_url

from vync.config import DATABASE_URL, NOTIFY_CHANNEL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: str  # INSERT / UPDATE
    record: Dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: str) -> "ChangeEvent":
        data = json.loads(payload)
        return cls(
            table=data["table"],
            type=str(data["type"]).upper(),
            record=data.get("record") or {},
        )


class Subscription:
    """Handle returned by `ChangeFeed.subscribe`. Unsubscribing twice is a no-op."""

    def __init__(self, feed: "ChangeFeed", table: str, events: Sequence[str],
                 match: Optional[Dict], callback: Callable[[ChangeEvent], None]):
        self.feed = feed
        self.table = table
        self.events = tuple(e.upper() for e in events)
        self.match = dict(match or {})
        self.callback = callback
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        return all(
            str(event.record.get(key)) == str(value) for key, value in self.match.items()
        )

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        self.feed._remove(self)


class ChangeFeed:
    """In-process fan-out of change events. Publish on the consumer's thread."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], None],
        events: Sequence[str] = ("INSERT", "UPDATE"),
        match: Optional[Dict] = None,
    ) -> Subscription:
        subscription = Subscription(self, table, events, match, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent):
        for subscription in list(self._subscriptions):
            # A callback may cancel later subscriptions
            if not subscription.active or not subscription.matches(event):
                continue
            try:
                subscription.callback(event)
            except Exception as e:
                logger.error(f"Change feed subscriber failed on {event.table}: {e}",
                             exc_info=True)


def _libpq_dsn(database_url: str) -> str:
    """SQLAlchemy URL -> libpq URI (drops the +driver suffix)."""
    url = make_url(database_url).set(drivername="postgresql")
    return url.render_as_string(hide_password=False)


class PostgresChangeFeed(ChangeFeed):
    """ChangeFeed fed by `LISTEN <channel>` on a dedicated connection."""

    def __init__(self, database_url: str = DATABASE_URL, channel: str = NOTIFY_CHANNEL):
        super().__init__()
        self.dsn = _libpq_dsn(database_url)
        self.channel = channel
        self.conn = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def connect(self):
        if self.conn is not None:
            return
        self.conn = psycopg2.connect(self.dsn)
        self.conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        with self.conn.cursor() as cur:
            cur.execute(f"LISTEN {self.channel};")
        logger.info(f"Listening for changes on channel '{self.channel}'")

    def attach(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Deliver notifications on an asyncio loop."""
        self.connect()
        self._loop = loop or asyncio.get_running_loop()
        self._loop.add_reader(self.conn.fileno(), self.drain)

    def drain(self) -> List[ChangeEvent]:
        """Read pending notifications and publish them."""
        self.conn.poll()
        events = []
        while self.conn.notifies:
            notify = self.conn.notifies.pop(0)
            try:
                event = ChangeEvent.from_payload(notify.payload)
            except (ValueError, KeyError) as e:
                logger.warning(f"Ignoring malformed notification: {e}")
                continue
            events.append(event)
            self.publish(event)
        return events

    def wait(self, timeout: float) -> List[ChangeEvent]:
        """Block up to `timeout` seconds for notifications."""
        self.connect()
        ready, _, _ = select.select([self.conn], [], [], timeout)
        if not ready:
            return []
        return self.drain()

    def close(self):
        if self.conn is None:
            return
        if self._loop is not None:
            self._loop.remove_reader(self.conn.fileno())
            self._loop = None
        self.conn.close()
        self.conn = None
