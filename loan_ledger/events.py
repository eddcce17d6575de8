"""
Change Notification Module

Publish/subscribe feed of row-level changes in the persistent store, and the
bridge that turns matching notifications into full reloads of the ledger's
in-memory copy.
"""

from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
import uuid
import logging
from threading import Lock, RLock

from .dates import parse_timestamp, utcnow
from .storage import StorageInterface


@dataclass
class ChangeNotification:
    """One committed change to a stored row"""
    table: str
    record_id: str
    account_id: str
    action: str  # "upsert" or "delete"
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'table': self.table,
            'record_id': self.record_id,
            'account_id': self.account_id,
            'action': self.action,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeNotification':
        """Create from dictionary"""
        return cls(
            table=data['table'],
            record_id=data['record_id'],
            account_id=data['account_id'],
            action=data['action'],
            timestamp=parse_timestamp(data['timestamp']),
            event_id=data['event_id']
        )


NotificationHandler = Callable[[ChangeNotification], None]


class ChangeFeed:
    """Change notification dispatcher, subscribable per table or for everything"""

    def __init__(self):
        self._handlers: Dict[str, List[NotificationHandler]] = {}
        self._global_handlers: List[NotificationHandler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_ledger.events")

    def subscribe(self, table: str, handler: NotificationHandler) -> None:
        """Subscribe to changes of one table"""
        with self._lock:
            self._handlers.setdefault(table, []).append(handler)
            self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {table}")

    def subscribe_all(self, handler: NotificationHandler) -> None:
        """Subscribe to changes of every table"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {getattr(handler, '__name__', repr(handler))}")

    def unsubscribe(self, handler: NotificationHandler, table: Optional[str] = None) -> None:
        """Remove a handler from one table, or from the global list when no table is given"""
        with self._lock:
            handlers = self._handlers.get(table, []) if table else self._global_handlers
            try:
                handlers.remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed")

    def publish(self, notification: ChangeNotification) -> None:
        """Deliver a notification to its table's handlers, then to global handlers"""
        with self._lock:
            handlers = list(self._handlers.get(notification.table, [])) + list(self._global_handlers)
        self.logger.debug(
            f"Publishing {notification.action} of {notification.table}:{notification.record_id} "
            f"for account {notification.account_id}"
        )
        for handler in handlers:
            try:
                handler(notification)
            except Exception as e:
                # A broken subscriber must not affect the publisher
                self.logger.error(
                    f"Error in change handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {notification.table}: {e}"
                )

    def attach(self, storage: StorageInterface) -> None:
        """Publish a notification for every write the storage backend commits"""
        def on_change(table: str, record_id: str, account_id: str, action: str) -> None:
            self.publish(ChangeNotification(
                table=table,
                record_id=record_id,
                account_id=account_id,
                action=action
            ))
        storage.add_change_listener(on_change)

    def get_handler_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table:
                return len(self._handlers.get(table, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class SyncBridge:
    """
    Reloads a LedgerEngine whenever the store reports a change to one of its
    account's rows.

    Reloads are full replaces queued on the engine's command queue. While one
    reload is pending further notifications are folded into it.
    """

    def __init__(self, feed: ChangeFeed, engine):
        self.feed = feed
        self.engine = engine
        self.logger = logging.getLogger("loan_ledger.sync")
        self.reloads_requested = 0
        self.ignored = 0
        self._pending = False
        self._pending_lock = Lock()
        self._subscribed = False

    def start(self) -> None:
        if not self._subscribed:
            self.feed.subscribe_all(self.handle)
            self._subscribed = True

    def stop(self) -> None:
        if self._subscribed:
            self.feed.unsubscribe(self.handle)
            self._subscribed = False

    def handle(self, notification: ChangeNotification) -> None:
        if notification.account_id != self.engine.account_id:
            self.ignored += 1
            return

        with self._pending_lock:
            if self._pending:
                return
            self._pending = True
        self.reloads_requested += 1
        if self.engine.commands.post(self._reload).cancelled():
            with self._pending_lock:
                self._pending = False

    def _reload(self) -> None:
        with self._pending_lock:
            self._pending = False
        self.engine.store.reload()
        self.logger.debug(f"Reloaded ledger for account {self.engine.account_id}")
