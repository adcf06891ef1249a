import unittest

from job_events import (
    DoneEvent,
    EventBus,
    JobReporter,
    LogEvent,
    ProgressEvent,
    event_payload,
    truncate_log_line,
)


class TestTruncation(unittest.TestCase):
    def test_long_line_is_cut_with_ellipsis(self):
        line = truncate_log_line("x" * 1000)
        self.assertEqual(len(line), 400)
        self.assertTrue(line.endswith("…"))

    def test_short_line_is_only_trimmed(self):
        self.assertEqual(truncate_log_line("  frame=12  \n"), "frame=12")


class TestEventBus(unittest.TestCase):
    def test_failing_listener_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(_event):
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(LogEvent("job-1", "hello"))

        self.assertEqual(seen, [LogEvent("job-1", "hello")])

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        bus.publish(LogEvent("job-1", "hello"))
        self.assertEqual(seen, [])

    def test_payload_carries_wire_name(self):
        payload = event_payload(ProgressEvent("job-1", 12.5))
        self.assertEqual(payload, {"job_id": "job-1", "percent": 12.5, "event": "pipeline_progress"})


class TestJobReporter(unittest.TestCase):
    def setUp(self):
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.reporter = JobReporter(self.bus, "job-7")

    def test_progress_is_monotonic_and_clamped(self):
        for value in (10.0, 5.0, 20.0, 250.0, 99.0):
            self.reporter.progress(value)

        percents = [event.percent for event in self.events]
        self.assertEqual(percents, [10.0, 20.0, 100.0])

    def test_done_is_published_once_and_last(self):
        self.assertTrue(self.reporter.done(True, "Done: out.mp4", "/tmp/f", "/tmp/f/%08d.png"))
        self.assertFalse(self.reporter.done(False, "again", "", ""))
        self.reporter.log("late line")
        self.reporter.progress(50.0)

        self.assertEqual(len(self.events), 1)
        self.assertIsInstance(self.events[0], DoneEvent)
        self.assertEqual(self.reporter.outcome.message, "Done: out.mp4")
        self.assertTrue(self.reporter.finished)

    def test_blank_log_lines_are_dropped(self):
        self.reporter.log("   ")
        self.reporter.log("Frames folder: /tmp/x")
        self.assertEqual(self.events, [LogEvent("job-7", "Frames folder: /tmp/x")])


if __name__ == "__main__":
    unittest.main()
