import os
import shutil
import tempfile
import time
import unittest
from unittest.mock import MagicMock

from log_monitor.core.errors import InvalidStateTransition, RemoteAuthError, RemoteConnectError
from log_monitor.core.provider import LogProvider, Workload
from log_monitor.core.sources import (
    FileLogSource, LogLineParser, RemoteLogSource, SourceChange, SourceState, container_label,
    stream_prefixes,
)
from log_monitor.core.worker import Clear, Entries, RawData, ReportFailure, SourceReader

from test_multiplexer import QueueStream, wait_for


class TestFileLogSource(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "app.log")
        self.source = FileLogSource(self.path)
        self.source.start()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, data, mode="wb"):
        with open(self.path, mode) as f:
            f.write(data)

    def test_missing_file_skips_poll(self):
        self.assertEqual(self.source.check_changes(), SourceChange.SKIP)
        self.assertEqual(self.source.state, SourceState.STREAMING)

    def test_empty_file_skips_poll(self):
        self.write(b"")
        self.assertEqual(self.source.check_changes(), SourceChange.SKIP)

    def test_reads_appended_bytes_only(self):
        self.write(b"one\n")
        self.assertEqual(self.source.check_changes(), SourceChange.OK)
        self.assertEqual(self.source.read(), b"one\n")
        self.write(b"two\n", "ab")
        self.assertEqual(self.source.check_changes(), SourceChange.OK)
        self.assertEqual(self.source.read(), b"two\n")
        self.assertEqual(self.source.offset, 8)

    def test_truncation_reloads_from_start(self):
        self.write(b"a long first line\n")
        self.source.check_changes()
        self.source.read()
        self.write(b"short\n")

        self.assertEqual(self.source.check_changes(), SourceChange.RELOAD)
        self.assertEqual(self.source.offset, 0)
        self.assertEqual(self.source.state, SourceState.STREAMING)
        self.assertEqual(self.source.check_changes(), SourceChange.OK)
        self.assertEqual(self.source.read(), b"short\n")

    def test_replaced_file_reloads(self):
        self.write(b"old\n")
        self.source.check_changes()
        self.source.read()
        replacement = os.path.join(self.tmpdir, "new.log")
        with open(replacement, "wb") as f:
            f.write(b"brand new content\n")
        os.replace(replacement, self.path)
        self.assertEqual(self.source.check_changes(), SourceChange.RELOAD)

    def test_stop_is_terminal(self):
        self.source.stop()
        self.assertEqual(self.source.state, SourceState.STOPPED)
        self.assertEqual(self.source.check_changes(), SourceChange.SKIP)
        self.source.stop()
        with self.assertRaises(InvalidStateTransition):
            self.source._transition(SourceState.STREAMING)


class TestSourceReader(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "app.log")
        self.posted = []
        self.reader = SourceReader(FileLogSource(self.path), self.posted.append, interval=0.01)

    def tearDown(self):
        self.reader.stop()
        shutil.rmtree(self.tmpdir)

    def test_truncation_posts_clear_before_new_text(self):
        with open(self.path, "wb") as f:
            f.write(b"first line\n")
        self.reader.poll_once()
        with open(self.path, "wb") as f:
            f.write(b"x\n")
        self.reader.poll_once()
        self.reader.poll_once()

        self.assertEqual(self.posted, [RawData(b"first line\n"), Clear(reload=True), RawData(b"x\n")])

    def test_missing_file_posts_nothing(self):
        self.reader.poll_once()
        self.assertEqual(self.posted, [])

    def test_connect_failure_is_reported(self):
        source = MagicMock()
        source.name = "remote"
        source.start.side_effect = RemoteConnectError("no route")
        source.is_open = False
        reader = SourceReader(source, self.posted.append)
        reader.poll_once()
        self.assertEqual(self.posted, [ReportFailure("no route")])
        source.check_changes.assert_not_called()

    def test_thread_polls_until_stopped(self):
        with open(self.path, "wb") as f:
            f.write(b"hello\n")
        self.reader.start()
        self.assertTrue(wait_for(lambda: self.posted))
        self.reader.stop()
        self.assertFalse(self.reader.is_running)
        self.assertEqual(self.reader.source.state, SourceState.STOPPED)


class FakeProvider(LogProvider):
    def __init__(self, workloads):
        self.workloads = workloads
        self.opened = []
        self.streams = {}
        self.fail = None
        self.refuse = {}   # (workload, container) -> exception
        self.preload = {}  # (workload, container) -> chunks already waiting

    def list_workloads(self, namespace):
        if self.fail:
            raise self.fail
        return self.workloads

    def stream_logs(self, namespace, workload, container=None, since_seconds=None, follow=True):
        self.opened.append((workload, container, since_seconds))
        if (workload, container) in self.refuse:
            raise self.refuse[(workload, container)]
        stream = QueueStream()
        for chunk in self.preload.get((workload, container), ()):
            stream.chunks.put(chunk)
        self.streams[(workload, container)] = stream
        return stream


class TestRemoteLogSource(unittest.TestCase):
    def setUp(self):
        self.provider = FakeProvider([
            Workload("web-abc12", ("app", "proxy"), True),
            Workload("db-xyz9", ("postgres",), True),
            Workload("other-1", ("x",), True),
        ])
        self.source = RemoteLogSource(self.provider, "default", ["web", "db"], since_seconds=600)

    def tearDown(self):
        self.source.stop()

    def read_entries(self, count, timeout=2.0):
        entries = []
        deadline = time.monotonic() + timeout
        while len(entries) < count and time.monotonic() < deadline:
            entries.extend(self.source.read())
            time.sleep(0.01)
        return entries

    def test_opens_one_stream_per_container_of_matching_pods(self):
        self.source.start()
        self.assertEqual(self.source.state, SourceState.STREAMING)
        self.assertEqual(self.source.multiplexer.active_names(),
                         ["db-xyz9#postgres", "web-abc12#app", "web-abc12#proxy"])
        self.assertTrue(wait_for(lambda: len(self.provider.opened) == 3))
        self.assertEqual({o[2] for o in self.provider.opened}, {600})

    def test_waits_for_pods_to_become_ready(self):
        self.provider.workloads = [Workload("web-abc12", ("app",), False)]
        self.source.start()
        self.assertEqual(self.source.state, SourceState.INITIALIZING)
        self.assertEqual(self.source.multiplexer.active_names(), [])

        self.provider.workloads = [Workload("web-abc12", ("app",), True), Workload("db-1", ("pg",), True)]
        self.source.start()
        self.assertEqual(self.source.state, SourceState.STREAMING)
        self.assertEqual(len(self.source.multiplexer.active_names()), 2)

    def test_provider_failure_reaches_caller(self):
        self.provider.fail = RemoteConnectError("cannot list pods")
        with self.assertRaises(RemoteConnectError):
            self.source.start()

    def test_read_returns_prefixed_timestamped_entries(self):
        self.source.start()
        self.assertTrue(wait_for(lambda: ("db-xyz9", "postgres") in self.provider.streams))
        self.provider.streams[("db-xyz9", "postgres")].chunks.put(b"2024-01-01T00:00:01Z ready\n")
        entries = self.read_entries(1)
        self.assertEqual(len(entries), 1)
        self.assertTrue(entries[0].line.startswith("[postgres-xyz9]"))
        self.assertTrue(entries[0].line.endswith(" ready"))
        self.assertEqual(entries[0].text, "ready\n")

    def test_first_published_lines_already_carry_their_tag(self):
        self.provider.preload[("web-abc12", "app")] = [b"2024-01-01T00:00:01Z early\n"]
        self.source.start()
        entries = self.read_entries(1)
        self.assertEqual(len(entries), 1)
        # Widest label is postgres-xyz9
        self.assertEqual(entries[0].prefix, "[app-abc12]".ljust(len("postgres-xyz9") + 3))
        self.assertEqual(entries[0].line, entries[0].prefix + "early")

    def test_tags_stay_put_when_a_sibling_reopens(self):
        self.source.start()
        self.assertTrue(wait_for(lambda: len(self.provider.streams) == 3))
        self.provider.streams[("db-xyz9", "postgres")].chunks.put(None)
        self.assertTrue(wait_for(lambda: len(self.source.multiplexer.active_names()) == 2))
        self.source.read()
        self.source.start()

        self.assertTrue(wait_for(lambda: len(self.provider.opened) == 4))
        self.provider.streams[("web-abc12", "proxy")].chunks.put(b"2024-01-01T00:00:01Z up\n")
        entries = self.read_entries(1)
        self.assertEqual(entries[0].prefix, "[proxy-abc12]".ljust(len("postgres-xyz9") + 3))

    def test_leading_carriage_return_still_gets_a_blank_line(self):
        self.source.start()
        self.assertTrue(wait_for(lambda: ("web-abc12", "app") in self.provider.streams))
        self.provider.streams[("web-abc12", "app")].chunks.put(b"2024-01-01T00:00:01Z \rTraceback\n")
        entries = self.read_entries(1)
        self.assertTrue(entries[0].prefix)
        self.assertTrue(entries[0].needs_leading_blank)

    def test_refused_stream_is_reported_as_failure(self):
        self.provider.refuse[("db-xyz9", "postgres")] = RemoteAuthError("403 Forbidden")
        self.source.start()

        failures = []
        deadline = time.monotonic() + 2.0
        while not failures and time.monotonic() < deadline:
            self.assertEqual(self.source.read(), [])
            failures.extend(self.source.take_failures())
            time.sleep(0.01)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], RemoteAuthError)
        self.assertEqual(self.source.take_failures(), [])
        self.assertTrue(self.source.is_open)

    def poll_until(self, reader, posted, kind):
        deadline = time.monotonic() + 2.0
        while not any(isinstance(m, kind) for m in posted) and time.monotonic() < deadline:
            reader.poll_once()
            time.sleep(0.01)
        return [m for m in posted if isinstance(m, kind)]

    def test_reader_reports_refused_stream(self):
        self.provider.refuse[("web-abc12", "proxy")] = RemoteAuthError("403 Forbidden")
        posted = []
        reader = SourceReader(self.source, posted.append)
        self.assertEqual(self.poll_until(reader, posted, ReportFailure), [ReportFailure("403 Forbidden")])

    def test_reader_keeps_delivering_while_reinit_fails(self):
        self.source.start()
        self.assertTrue(wait_for(lambda: len(self.provider.streams) == 3))
        self.provider.streams[("db-xyz9", "postgres")].chunks.put(None)
        self.assertTrue(wait_for(lambda: len(self.source.multiplexer.active_names()) == 2))
        self.source.read()
        self.provider.fail = RemoteConnectError("api down")

        self.provider.streams[("web-abc12", "app")].chunks.put(b"2024-01-01T00:00:01Z still up\n")
        posted = []
        reader = SourceReader(self.source, posted.append)
        delivered = self.poll_until(reader, posted, Entries)

        self.assertEqual([e.text for e in delivered[0].entries], ["still up\n"])
        self.assertEqual(posted[0], ReportFailure("api down"))

    def test_stream_prefixes_pad_to_the_widest_label(self):
        self.assertEqual(stream_prefixes({"a#x": "x-a"}), {"a#x": ""})
        self.assertEqual(stream_prefixes({}), {})
        self.assertEqual(stream_prefixes({"a#x": "x-a", "b#long": "long-b"}),
                         {"a#x": "[x-a]    ", "b#long": "[long-b] "})

    def test_ended_stream_is_reopened_alone(self):
        self.source.start()
        self.assertTrue(wait_for(lambda: len(self.provider.streams) == 3))
        self.provider.streams[("web-abc12", "app")].chunks.put(None)
        self.assertTrue(wait_for(lambda: len(self.source.multiplexer.active_names()) == 2))

        self.source.read()
        self.source.start()
        self.assertTrue(wait_for(lambda: len(self.provider.opened) == 4))
        self.assertEqual(self.provider.opened[-1][:2], ("web-abc12", "app"))

    def test_cancelled_stream_stays_closed(self):
        self.source.start()
        self.assertTrue(self.source.cancel("web-abc12#proxy"))
        self.assertTrue(wait_for(lambda: len(self.provider.streams) == 3))
        self.provider.streams[("web-abc12", "app")].chunks.put(None)
        self.assertTrue(wait_for(lambda: len(self.source.multiplexer.active_names()) == 1))

        self.source.read()
        self.source.start()
        self.assertIn("web-abc12#app", self.source.multiplexer.active_names())
        self.assertNotIn("web-abc12#proxy", self.source.multiplexer.active_names())

    def test_stop_releases_streams_artifacts_and_helper(self):
        artifact = tempfile.NamedTemporaryFile(delete=False)
        artifact.close()
        helper = MagicMock()
        helper.poll.return_value = None
        source = RemoteLogSource(self.provider, "default", ["web"], helper=helper, artifacts=[artifact.name])
        source.start()
        source.stop()

        self.assertEqual(source.state, SourceState.STOPPED)
        self.assertEqual(source.multiplexer.active_names(), [])
        self.assertFalse(os.path.exists(artifact.name))
        helper.kill.assert_called_once()

    def test_helper_kill_failure_is_not_fatal(self):
        helper = MagicMock()
        helper.poll.return_value = None
        helper.kill.side_effect = OSError("gone")
        source = RemoteLogSource(self.provider, "default", ["web"], helper=helper)
        source.stop()
        self.assertEqual(source.state, SourceState.STOPPED)


class TestLogLineParser(unittest.TestCase):
    def test_line_without_timestamp_reuses_last(self):
        parser = LogLineParser("pod")
        entries = parser.feed(b"2024-01-01T00:00:01Z a\ncontinued\n")
        self.assertEqual(entries[0].timestamp, entries[1].timestamp)
        self.assertEqual(entries[1].text, "continued\n")

    def test_partial_line_waits_for_terminator(self):
        parser = LogLineParser("pod")
        self.assertEqual(parser.feed(b"2024-01-01T00:00:01Z par"), [])
        self.assertEqual([e.text for e in parser.feed(b"tial\n")], ["partial\n"])

    def test_container_label(self):
        self.assertEqual(container_label("web-7d9f-abc12", "app"), "app-abc12")


if __name__ == "__main__":
    unittest.main()
