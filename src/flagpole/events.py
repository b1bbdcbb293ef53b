from __future__ import annotations
import enum
import json
import logging
import random
import threading
import time
from copy import deepcopy
from typing import TYPE_CHECKING, Any

import httpx
from prometheus_client import Counter

if TYPE_CHECKING:
    from . import Context


logger = logging.getLogger(__name__)

DEFAULT_EVENTS_URI = "https://events.launchdarkly.com"

_prom_events = Counter(
    "flagpole_events",
    "Analytics events by outcome",
    labelnames=["outcome"],
)


def _now_millis() -> int:
    return int(time.time() * 1000)


class Event:
    """
    Base of all analytics events. Events are frozen once constructed: the
    context's wire form and any caller supplied values are copied at creation
    time, and assigning to an attribute afterwards raises AttributeError.
    """

    __slots__ = ("kind", "creation_date", "context", "user", "_frozen")
    kind: str
    creation_date: int
    context: Context
    user: dict[str, Any]

    def __init__(self, kind: str, context: Context, creation_date: int | None = None):
        # Subclasses set their own fields before calling this, which freezes
        # the event.
        self.kind = kind
        self.context = context
        self.user = deepcopy(context.to_dict())
        self.creation_date = _now_millis() if creation_date is None else creation_date
        self._frozen = True

    def __setattr__(self, name: str, value: Any):
        if getattr(self, "_frozen", False):
            raise AttributeError(f"{type(self).__name__} is immutable")
        object.__setattr__(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "creationDate": self.creation_date,
            "user": self.user,
        }


class FeatureEvent(Event):
    """
    A flag evaluation. prereq_of is set when the flag was evaluated as a
    prerequisite of another flag.
    """

    __slots__ = ("key", "value", "default", "version", "variation", "prereq_of")
    key: str
    value: Any
    default: Any
    version: int | None
    variation: int | None
    prereq_of: str | None

    def __init__(
        self,
        key: str,
        context: Context,
        value: Any = None,
        default: Any = None,
        version: int | None = None,
        variation: int | None = None,
        prereq_of: str | None = None,
        creation_date: int | None = None,
    ):
        self.key = key
        self.value = deepcopy(value)
        self.default = deepcopy(default)
        self.version = version
        self.variation = variation
        self.prereq_of = prereq_of
        super().__init__("feature", context, creation_date)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["key"] = self.key
        d["value"] = self.value
        d["default"] = self.default
        d["version"] = self.version
        if self.variation is not None:
            d["variation"] = self.variation
        if self.prereq_of is not None:
            d["prereqOf"] = self.prereq_of
        return d


class IdentifyEvent(Event):
    __slots__ = ()

    def __init__(self, context: Context, creation_date: int | None = None):
        super().__init__("identify", context, creation_date)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["key"] = self.user["key"]
        return d


class CustomEvent(Event):
    __slots__ = ("key", "data")
    key: str
    data: Any

    def __init__(self, key: str, context: Context, data: Any = None, creation_date: int | None = None):
        self.key = key
        self.data = deepcopy(data)
        super().__init__("custom", context, creation_date)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["key"] = self.key
        if self.data is not None:
            d["data"] = self.data
        return d


class EventQueue:
    """
    Bounded FIFO of events. Adding never blocks: once capacity is reached new
    events are dropped. EventQueue is thread-safe.
    """

    def __init__(self, capacity: int):
        if not isinstance(capacity, int) or capacity <= 0:
            raise ValueError("capacity must be a positive integer")
        self._capacity = capacity
        self._mu = threading.Lock()
        self._events: list[Event] = []

    def __len__(self) -> int:
        with self._mu:
            return len(self._events)

    def try_enqueue(self, event: Event) -> bool:
        with self._mu:
            full = len(self._events) >= self._capacity
            if not full:
                self._events.append(event)
        if full:
            logger.warning("Exceeded event queue capacity of %d. Increase capacity to avoid dropping events.", self._capacity)
            return False
        return True

    def drain_all(self) -> list[Event]:
        """
        Remove and return everything queued so far, oldest first.
        """
        with self._mu:
            events, self._events = self._events, []
        return events


class PipelineState(enum.Enum):
    RUNNING = "running"
    FLUSHING = "flushing"
    # Terminal: the collector rejected the SDK key.
    DISABLED = "disabled"
    # Terminal: close() was called.
    CLOSED = "closed"


class EventProcessor:
    """
    Buffers analytics events and delivers them in batches to the events
    collector from a background thread.

    Delivery is best effort. A batch that fails to send is retried once after
    retry_delay seconds and then dropped. A 401 response means the SDK key is
    invalid; the processor then stops for good and drops everything it holds.
    All public methods are thread-safe and never raise on delivery problems.
    """

    def __init__(
        self,
        sdk_key: str,
        events_uri: str = DEFAULT_EVENTS_URI,
        capacity: int = 10000,
        flush_interval: float = 5,
        sampling_interval: int = 1,
        timeout: float = 10,
        retry_delay: float = 1,
        http_client: httpx.Client | None = None,
    ):
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if not isinstance(sampling_interval, int) or sampling_interval < 1:
            raise ValueError("sampling_interval must be an integer of at least 1")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if retry_delay < 0:
            raise ValueError("retry_delay must not be negative")

        self._queue = EventQueue(capacity)
        self._uri = events_uri.rstrip("/") + "/bulk"
        self._headers = {
            "Authorization": sdk_key,
            "Content-Type": "application/json",
            "User-Agent": "flagpole-python",
        }
        self._flush_interval = flush_interval
        self._sampling_interval = sampling_interval
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._owns_client = http_client is None
        self._client = httpx.Client(timeout=httpx.Timeout(timeout)) if http_client is None else http_client

        # Each producer thread samples with its own generator.
        self._local = threading.local()

        self._state_cv = threading.Condition()
        self._state = PipelineState.RUNNING
        self._closing = False
        self._stop_wait = threading.Event()
        self._start_flusher()

    def _start_flusher(self):
        def _worker():
            while not self._stop_wait.wait(self._flush_interval):
                self.flush()

        self._flusher = threading.Thread(target=_worker, name="flagpole-events", daemon=True)
        self._flusher.start()

    @property
    def state(self) -> PipelineState:
        with self._state_cv:
            return self._state

    def _sampled(self) -> bool:
        if self._sampling_interval <= 1:
            return True
        rng = getattr(self._local, "random", None)
        if rng is None:
            rng = self._local.random = random.Random()
        return rng.randrange(self._sampling_interval) == 0

    def send_event(self, event: Event) -> bool:
        """
        Queue the event for delivery. Returns whether the event was queued.
        Events are silently discarded once the processor is disabled or
        closed, and dropped with a warning when the queue is full. Events
        that arrive while close is sending its final batch are discarded.
        """
        if not self._sampled():
            _prom_events.labels(outcome="sampled").inc()
            return False
        # The state check and the enqueue are atomic with respect to close and
        # _disable.
        with self._state_cv:
            if self._state in (PipelineState.DISABLED, PipelineState.CLOSED):
                return False
            queued = self._queue.try_enqueue(event)
        if not queued:
            _prom_events.labels(outcome="dropped").inc()
            return False
        _prom_events.labels(outcome="queued").inc()
        return True

    def flush(self):
        """
        Send everything queued so far. Does nothing if another flush is in
        progress, the queue is empty, or the processor is disabled or closed.
        """
        self._flush(wait=False)

    def _flush(self, wait: bool):
        with self._state_cv:
            if wait:
                while self._state is PipelineState.FLUSHING:
                    self._state_cv.wait()
            if self._state is not PipelineState.RUNNING:
                return
            self._state = PipelineState.FLUSHING
        try:
            events = self._queue.drain_all()
            if events:
                self._send_batch(events)
        except Exception:
            logger.exception("Error flushing events")
        finally:
            with self._state_cv:
                # _disable may have moved us to DISABLED meanwhile.
                if self._state is PipelineState.FLUSHING:
                    self._state = PipelineState.RUNNING
                self._state_cv.notify_all()

    def close(self):
        """
        Flush remaining events and stop the background thread. Safe to call
        more than once and while a flush is in progress.
        """
        with self._state_cv:
            if self._closing:
                return
            self._closing = True

        self._stop_wait.set()
        if self._flusher is not threading.current_thread():
            self._flusher.join()

        try:
            self._flush(wait=True)
        finally:
            with self._state_cv:
                if self._state is PipelineState.RUNNING:
                    self._state = PipelineState.CLOSED
                self._state_cv.notify_all()

            # Anything queued between the final flush and the state change.
            self._discard_queued()
            if self._owns_client:
                self._client.close()

    def _discard_queued(self):
        discarded = self._queue.drain_all()
        if discarded:
            logger.debug("Discarding %d queued events", len(discarded))
            _prom_events.labels(outcome="discarded").inc(len(discarded))

    def _disable(self):
        logger.error("Received 401 error, no further events will be posted since the SDK key is invalid")
        with self._state_cv:
            self._state = PipelineState.DISABLED
            self._state_cv.notify_all()
        self._stop_wait.set()
        self._discard_queued()

    def _send_batch(self, events: list[Event]):
        try:
            payload = json.dumps([e.to_dict() for e in events], separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError):
            logger.exception("Error serializing %d events, dropping them", len(events))
            _prom_events.labels(outcome="failed").inc(len(events))
            return

        try:
            self._post(payload, len(events))
        except httpx.HTTPError as e:
            logger.debug("Error sending events: %s, waiting %s seconds before retrying", e, self._retry_delay)
            time.sleep(self._retry_delay)
            try:
                self._post(payload, len(events))
            except httpx.TimeoutException:
                logger.error("Timed out trying to send %d events after %s seconds", len(events), self._timeout)
                _prom_events.labels(outcome="failed").inc(len(events))
            except httpx.HTTPError as e:
                logger.error("Error submitting events using uri %r: %s", self._uri, e)
                _prom_events.labels(outcome="failed").inc(len(events))

    def _post(self, payload: bytes, count: int):
        """
        POST one batch. Raises httpx.HTTPError on transport failures. Non-2xx
        responses are handled here and never retried.
        """
        logger.debug("Submitting %d events to %s", count, self._uri)
        response = self._client.post(self._uri, content=payload, headers=self._headers, timeout=self._timeout)
        if response.is_success:
            logger.debug("Got %d when sending events", response.status_code)
            _prom_events.labels(outcome="sent").inc(count)
            return
        logger.error("Error submitting events using uri %r, status %d", self._uri, response.status_code)
        _prom_events.labels(outcome="failed").inc(count)
        if response.status_code == 401:
            self._disable()
