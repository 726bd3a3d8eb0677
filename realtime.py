# realtime.py
import enum
import logging
import threading
from typing import Callable, List, Optional

from models import Message
from queries import messages_key

logger = logging.getLogger(__name__)


class SubscriptionState(str, enum.Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


class RealtimeBridge:
    """
    Turns message inserts on one complaint thread into cache invalidations.

    UNSUBSCRIBED -> SUBSCRIBING -> SUBSCRIBED -> UNSUBSCRIBED (teardown)

    The event payload is never applied locally; invalidating
    messages(complaint_id) makes the next read go back to the backend.
    Reconnects are the transport's business.
    """

    def __init__(self, transport, cache, complaint_id: str):
        self.transport = transport
        self.cache = cache
        self.complaint_id = complaint_id
        self._state = SubscriptionState.UNSUBSCRIBED
        self._handle = None
        self._lock = threading.Lock()

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state != SubscriptionState.UNSUBSCRIBED

    def subscribe(self):
        with self._lock:
            if self._state != SubscriptionState.UNSUBSCRIBED:
                return
            self._state = SubscriptionState.SUBSCRIBING
        logger.debug("Subscribing to messages of %s", self.complaint_id)
        try:
            handle = self.transport.subscribe(
                "messages",
                {"complaint_id": self.complaint_id},
                self._on_insert,
                self._on_ack,
            )
        except Exception:
            with self._lock:
                self._state = SubscriptionState.UNSUBSCRIBED
            logger.exception("Could not subscribe to messages of %s", self.complaint_id)
            raise
        with self._lock:
            if self._state == SubscriptionState.UNSUBSCRIBED:
                # torn down while the transport was still setting up
                stale = handle
            else:
                self._handle = handle
                stale = None
        if stale is not None:
            self.transport.unsubscribe(stale)

    def teardown(self):
        with self._lock:
            handle = self._handle
            self._handle = None
            was = self._state
            self._state = SubscriptionState.UNSUBSCRIBED
        if handle is not None:
            try:
                self.transport.unsubscribe(handle)
            except Exception:
                logger.exception("Error while unsubscribing from %s", self.complaint_id)
        if was != SubscriptionState.UNSUBSCRIBED:
            logger.debug("Unsubscribed from messages of %s", self.complaint_id)

    def _on_ack(self):
        with self._lock:
            if self._state != SubscriptionState.SUBSCRIBING:
                return
            self._state = SubscriptionState.SUBSCRIBED
        logger.debug("Subscribed to messages of %s", self.complaint_id)

    def _on_insert(self, row):
        with self._lock:
            subscribed = self._state == SubscriptionState.SUBSCRIBED
        if not subscribed:
            logger.debug("Ignoring insert on %s while %s", self.complaint_id, self._state.value)
            return
        if str(row.get("complaint_id")) != str(self.complaint_id):
            return
        self.cache.invalidate(messages_key(self.complaint_id))


class ComplaintThread:
    """
    Chat panel for one complaint: keeps a realtime bridge open while the
    view is shown and re-reads the thread whenever it goes stale.
    """

    def __init__(self, queries, transport, runner, complaint_id: str, user_id: str,
                 on_messages: Optional[Callable[[List[Message]], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.queries = queries
        self.runner = runner
        self.complaint_id = complaint_id
        self.user_id = user_id
        self.on_messages = on_messages
        self.on_error = on_error
        self.bridge = RealtimeBridge(transport, queries.cache, complaint_id)
        self.messages: List[Message] = []
        self.loading = False
        self._closed = False
        self._unsubscribe_cache = None

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self):
        self._unsubscribe_cache = self.queries.cache.subscribe(messages_key(self.complaint_id), self.refresh)
        self.bridge.subscribe()
        self.refresh()

    def refresh(self):
        if self._closed:
            return
        self.loading = True
        self.runner.run(
            lambda: self.queries.messages(self.complaint_id),
            self._loaded,
            alive=lambda: not self._closed,
        )

    def _loaded(self, messages, exc):
        if self._closed:
            return
        self.loading = False
        if exc is not None:
            logger.warning("Could not load messages for %s: %s", self.complaint_id, exc)
            if self.on_error:
                self.on_error(exc)
            return
        self.messages = list(messages)
        if self.on_messages:
            self.on_messages(self.messages)

    def send(self, content: str, on_done=None):
        """Post a message; the cache invalidation triggers the re-read."""
        self.runner.run(
            lambda: self.queries.send_message(self.complaint_id, self.user_id, content),
            on_done,
            alive=lambda: not self._closed,
        )

    def is_mine(self, message: Message) -> bool:
        return message.sender_id == self.user_id

    def close(self):
        self._closed = True
        if self._unsubscribe_cache is not None:
            self._unsubscribe_cache()
            self._unsubscribe_cache = None
        self.bridge.teardown()
