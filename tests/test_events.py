import json
import threading
import time
import unittest

import httpx

from flagpole import Context, CustomEvent, EventProcessor, EventQueue, FeatureEvent, IdentifyEvent, PipelineState


class _Collector:
    """
    Fake events collector. Each request consumes the next planned outcome: a
    status code or an httpx exception class to raise. Once the plan runs out
    every request gets a 202.
    """

    def __init__(self, *outcomes, on_request=None):
        self.requests: list[httpx.Request] = []
        self._outcomes = list(outcomes)
        self._on_request = on_request
        self._mu = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._mu:
            self.requests.append(request)
            outcome = self._outcomes.pop(0) if self._outcomes else 202
        if self._on_request is not None:
            self._on_request(request)
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("simulated failure", request=request)
        return httpx.Response(outcome)

    def payloads(self) -> list[list[dict]]:
        return [json.loads(r.content) for r in self.requests]


def _event(i: int) -> CustomEvent:
    return CustomEvent(key=f"event-{i}", context=Context(f"user-{i}"), creation_date=1000 + i)


def _wait_until(predicate, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestEventQueue(unittest.TestCase):
    def test_capacity(self):
        q = EventQueue(3)
        self.assertEqual([q.try_enqueue(_event(i)) for i in range(3)], [True, True, True])
        with self.assertLogs("flagpole.events", level="WARNING"):
            self.assertFalse(q.try_enqueue(_event(3)))
        self.assertEqual(len(q), 3)
        self.assertEqual([e.key for e in q.drain_all()], ["event-0", "event-1", "event-2"])
        self.assertEqual(len(q), 0)
        self.assertEqual(q.drain_all(), [])
        self.assertTrue(q.try_enqueue(_event(4)))

    def test_invalid_capacity(self):
        for capacity in [0, -1, 1.5]:
            with self.subTest(capacity):
                with self.assertRaises(ValueError):
                    EventQueue(capacity)

    def test_concurrent_producers(self):
        q = EventQueue(100000)

        def produce(n):
            for i in range(1000):
                q.try_enqueue(_event(n * 1000 + i))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(q.drain_all()), 8000)


class TestEventSerialization(unittest.TestCase):
    def test_to_dict(self):
        context = Context("u", {"country": "au"})
        user = {"key": "u", "custom": {"country": "au"}}
        self.assertEqual(
            FeatureEvent(key="f", context=context, value=True, default=False, version=3, variation=0, creation_date=5).to_dict(),
            {"kind": "feature", "creationDate": 5, "user": user, "key": "f", "value": True, "default": False, "version": 3, "variation": 0},
        )
        self.assertEqual(
            FeatureEvent(key="b", context=context, version=1, prereq_of="f", creation_date=5).to_dict(),
            {"kind": "feature", "creationDate": 5, "user": user, "key": "b", "value": None, "default": None, "version": 1, "prereqOf": "f"},
        )
        self.assertEqual(
            IdentifyEvent(context=context, creation_date=5).to_dict(),
            {"kind": "identify", "creationDate": 5, "user": user, "key": "u"},
        )
        self.assertEqual(
            CustomEvent(key="clicked", context=context, data={"n": 1}, creation_date=5).to_dict(),
            {"kind": "custom", "creationDate": 5, "user": user, "key": "clicked", "data": {"n": 1}},
        )

    def test_events_are_frozen(self):
        context = Context("u", {"groups": ["a"]})
        data = {"items": [1]}
        events = [
            FeatureEvent(key="f", context=context, value={"v": 1}, creation_date=5),
            IdentifyEvent(context=context, creation_date=5),
            CustomEvent(key="clicked", context=context, data=data, creation_date=5),
        ]
        before = [e.to_dict() for e in events]
        context.attributes["groups"].append("b")
        context.attributes["country"] = "nz"
        data["items"].append(2)
        self.assertEqual([e.to_dict() for e in events], before)
        self.assertEqual(events[2].to_dict()["data"], {"items": [1]})
        for e in events:
            with self.subTest(e.kind):
                with self.assertRaises(AttributeError):
                    e.key = "other"
                with self.assertRaises(AttributeError):
                    e.creation_date = 6

    def test_creation_date_defaults_to_now(self):
        before = int(time.time() * 1000)
        e = IdentifyEvent(context=Context("u"))
        self.assertGreaterEqual(e.creation_date, before)
        self.assertLessEqual(e.creation_date, int(time.time() * 1000))


class TestEventProcessor(unittest.TestCase):
    def _processor(self, collector: _Collector, **kwargs) -> EventProcessor:
        client = httpx.Client(transport=httpx.MockTransport(collector))
        self.addCleanup(client.close)
        kwargs.setdefault("flush_interval", 3600)
        kwargs.setdefault("retry_delay", 0)
        p = EventProcessor("sdk-key", events_uri="https://events.test/", http_client=client, **kwargs)
        self.addCleanup(p.close)
        return p

    def test_invalid_config(self):
        cases = [
            {"capacity": 0},
            {"flush_interval": 0},
            {"sampling_interval": 0},
            {"sampling_interval": 1.5},
            {"timeout": 0},
            {"retry_delay": -1},
        ]
        for kwargs in cases:
            with self.subTest(kwargs):
                with self.assertRaises(ValueError):
                    EventProcessor("sdk-key", **kwargs)

    def test_flush_delivers_batch(self):
        collector = _Collector()
        p = self._processor(collector)
        self.assertTrue(p.send_event(_event(0)))
        self.assertTrue(p.send_event(_event(1)))
        p.flush()
        self.assertEqual(len(collector.requests), 1)
        r = collector.requests[0]
        self.assertEqual(r.method, "POST")
        self.assertEqual(str(r.url), "https://events.test/bulk")
        self.assertEqual(r.headers["content-type"], "application/json")
        self.assertEqual(r.headers["authorization"], "sdk-key")
        self.assertEqual([e["key"] for e in collector.payloads()[0]], ["event-0", "event-1"])
        self.assertEqual(p.state, PipelineState.RUNNING)

    def test_flush_empty_queue_is_noop(self):
        collector = _Collector()
        p = self._processor(collector)
        p.flush()
        self.assertEqual(collector.requests, [])

    def test_queue_full(self):
        collector = _Collector()
        p = self._processor(collector, capacity=5)
        self.assertTrue(all(p.send_event(_event(i)) for i in range(5)))
        with self.assertLogs("flagpole.events", level="WARNING"):
            self.assertFalse(p.send_event(_event(5)))
        p.flush()
        self.assertEqual(len(collector.requests), 1)
        self.assertEqual([e["key"] for e in collector.payloads()[0]], [f"event-{i}" for i in range(5)])

    def test_retry_once_then_succeed(self):
        collector = _Collector(httpx.ConnectError, 202)
        p = self._processor(collector)
        p.send_event(_event(0))
        p.send_event(_event(1))
        p.flush()
        self.assertEqual(len(collector.requests), 2)
        self.assertEqual(collector.requests[0].content, collector.requests[1].content)
        self.assertEqual(p.state, PipelineState.RUNNING)

    def test_retry_waits_before_resending(self):
        collector = _Collector(httpx.ConnectError, 202)
        p = self._processor(collector, retry_delay=0.2)
        p.send_event(_event(0))
        start = time.monotonic()
        p.flush()
        self.assertGreaterEqual(time.monotonic() - start, 0.2)
        self.assertEqual(len(collector.requests), 2)

    def test_batch_dropped_after_second_failure(self):
        for second in [httpx.ReadTimeout, httpx.ConnectError]:
            with self.subTest(second.__name__):
                collector = _Collector(httpx.ConnectError, second)
                p = self._processor(collector)
                p.send_event(_event(0))
                with self.assertLogs("flagpole.events", level="ERROR") as logs:
                    p.flush()
                self.assertEqual(len(collector.requests), 2)
                if second is httpx.ReadTimeout:
                    self.assertIn("Timed out", logs.output[-1])
                else:
                    self.assertIn("Error submitting events", logs.output[-1])
                # The batch is gone but the pipeline keeps running.
                p.flush()
                self.assertEqual(len(collector.requests), 2)
                p.send_event(_event(1))
                p.flush()
                self.assertEqual(len(collector.requests), 3)
                self.assertEqual([e["key"] for e in collector.payloads()[2]], ["event-1"])

    def test_error_status_is_not_retried(self):
        for status in [400, 403, 500, 503]:
            with self.subTest(status):
                collector = _Collector(status)
                p = self._processor(collector)
                p.send_event(_event(0))
                with self.assertLogs("flagpole.events", level="ERROR"):
                    p.flush()
                self.assertEqual(len(collector.requests), 1)
                self.assertEqual(p.state, PipelineState.RUNNING)

    def test_unauthorized_disables_pipeline(self):
        p = None

        def produce_during_send(request):
            # Producers keep adding events while the rejected batch is in flight.
            p.send_event(_event(100))
            p.send_event(_event(101))

        collector = _Collector(401, on_request=produce_during_send)
        p = self._processor(collector)
        p.send_event(_event(0))
        with self.assertLogs("flagpole.events", level="ERROR"):
            p.flush()
        self.assertEqual(len(collector.requests), 1)
        self.assertEqual(p.state, PipelineState.DISABLED)
        self.assertEqual(len(p._queue), 0)
        p._flusher.join(timeout=5)
        self.assertFalse(p._flusher.is_alive())

        self.assertFalse(p.send_event(_event(1)))
        p.flush()
        p.close()
        self.assertEqual(len(collector.requests), 1)
        self.assertEqual(p.state, PipelineState.DISABLED)

    def test_unauthorized_stops_timer(self):
        collector = _Collector(401)
        p = self._processor(collector, flush_interval=0.05)
        p.send_event(_event(0))
        self.assertTrue(_wait_until(lambda: p.state is PipelineState.DISABLED))
        for i in range(5):
            p.send_event(_event(i))
        time.sleep(0.3)
        self.assertEqual(len(collector.requests), 1)

    def test_timer_flushes(self):
        collector = _Collector()
        p = self._processor(collector, flush_interval=0.05)
        p.send_event(_event(0))
        self.assertTrue(_wait_until(lambda: len(collector.requests) == 1))
        p.send_event(_event(1))
        self.assertTrue(_wait_until(lambda: len(collector.requests) == 2))
        self.assertEqual([[e["key"] for e in b] for b in collector.payloads()], [["event-0"], ["event-1"]])

    def test_sampling(self):
        collector = _Collector()
        p = self._processor(collector, sampling_interval=2)
        accepted = sum(p.send_event(_event(i)) for i in range(2000))
        self.assertGreater(accepted, 800)
        self.assertLess(accepted, 1200)

        p = self._processor(collector, sampling_interval=1)
        self.assertEqual(sum(p.send_event(_event(i)) for i in range(100)), 100)

    def test_unserializable_batch_is_dropped(self):
        collector = _Collector()
        p = self._processor(collector)
        p.send_event(CustomEvent(key="bad", context=Context("u"), data={1, 2}))
        with self.assertLogs("flagpole.events", level="ERROR"):
            p.flush()
        self.assertEqual(collector.requests, [])
        self.assertEqual(p.state, PipelineState.RUNNING)

    def test_close_flushes_and_is_idempotent(self):
        collector = _Collector()
        p = self._processor(collector)
        p.send_event(_event(0))
        p.close()
        self.assertEqual(len(collector.requests), 1)
        self.assertEqual(p.state, PipelineState.CLOSED)
        self.assertFalse(p._flusher.is_alive())
        self.assertFalse(p.send_event(_event(1)))
        p.flush()
        p.close()
        self.assertEqual(len(collector.requests), 1)

    def test_close_closes_owned_client(self):
        p = EventProcessor("sdk-key", flush_interval=3600)
        p.close()
        self.assertTrue(p._client.is_closed)

    def test_one_flush_in_flight(self):
        entered = threading.Event()
        release = threading.Event()
        in_flight = []
        max_in_flight = []

        def block(request):
            in_flight.append(1)
            max_in_flight.append(len(in_flight))
            entered.set()
            release.wait(5)
            in_flight.pop()

        collector = _Collector(on_request=block)
        p = self._processor(collector)
        p.send_event(_event(0))
        flusher = threading.Thread(target=p.flush)
        flusher.start()
        self.assertTrue(entered.wait(5))
        self.assertEqual(p.state, PipelineState.FLUSHING)

        p.send_event(_event(1))
        # Skipped rather than queued behind the running flush.
        p.flush()
        self.assertEqual(len(collector.requests), 1)

        closer = threading.Thread(target=p.close)
        closer.start()
        release.set()
        flusher.join(5)
        closer.join(5)
        self.assertFalse(closer.is_alive())

        self.assertEqual([[e["key"] for e in b] for b in collector.payloads()], [["event-0"], ["event-1"]])
        self.assertEqual(max(max_in_flight), 1)
        self.assertEqual(p.state, PipelineState.CLOSED)

    def test_retry_rejected_as_unauthorized(self):
        collector = _Collector(httpx.ConnectError, 401)
        p = self._processor(collector)
        p.send_event(_event(0))
        with self.assertLogs("flagpole.events", level="ERROR"):
            p.flush()
        self.assertEqual(len(collector.requests), 2)
        self.assertEqual(collector.requests[0].content, collector.requests[1].content)
        self.assertEqual(p.state, PipelineState.DISABLED)
        self.assertFalse(p.send_event(_event(1)))
        self.assertEqual(len(p._queue), 0)

    def test_events_sent_during_final_flush_are_discarded(self):
        p = None
        accepted = []

        def produce_from_other_thread(request):
            t = threading.Thread(target=lambda: accepted.append(p.send_event(_event(9))))
            t.start()
            t.join(5)

        collector = _Collector(on_request=produce_from_other_thread)
        p = self._processor(collector)
        p.send_event(_event(0))
        p.close()
        # Queued while the final batch was in flight, then discarded by close.
        self.assertEqual(accepted, [True])
        self.assertEqual(len(collector.requests), 1)
        self.assertEqual([e["key"] for e in collector.payloads()[0]], ["event-0"])
        self.assertEqual(p.state, PipelineState.CLOSED)
        self.assertEqual(len(p._queue), 0)
        self.assertFalse(p.send_event(_event(10)))
        self.assertEqual(len(p._queue), 0)

    def test_close_with_concurrent_producers_leaves_queue_empty(self):
        collector = _Collector()
        p = self._processor(collector)
        started = threading.Barrier(5)

        def produce(n):
            started.wait(5)
            for i in range(2000):
                p.send_event(_event(n * 10000 + i))

        producers = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
        for t in producers:
            t.start()
        started.wait(5)
        p.close()
        for t in producers:
            t.join(10)
        self.assertEqual(p.state, PipelineState.CLOSED)
        self.assertEqual(len(p._queue), 0)

    def test_close_survives_unexpected_send_error(self):
        collector = _Collector()
        client = httpx.Client(transport=httpx.MockTransport(collector))
        p = EventProcessor("sdk-key", flush_interval=3600, retry_delay=0, http_client=client)
        self.addCleanup(p.close)
        client.close()
        p.send_event(_event(0))
        with self.assertLogs("flagpole.events", level="ERROR"):
            p.flush()
        self.assertEqual(p.state, PipelineState.RUNNING)
        p.send_event(_event(1))
        with self.assertLogs("flagpole.events", level="ERROR"):
            p.close()
        self.assertEqual(p.state, PipelineState.CLOSED)
        self.assertEqual(len(p._queue), 0)
        self.assertFalse(p._flusher.is_alive())
        self.assertEqual(collector.requests, [])
