import os
import tempfile
import threading
import unittest

from gemflash.config import FlashConfig
from gemflash.events import ProgressReporter, QueueEventSink
from gemflash.image import ImageRequest
from gemflash.session import FlashSession
from gemflash.transfer import TRANSFER_OK


class BlockingTransfer():
	"""
	Transfer primitive whose downloads wait until the test lets them go.
	"""

	def __init__(self, gate: threading.Event, started: threading.Event):
		self.gate = gate
		self.started = started

	def initialize(self) -> bool:
		return True

	def find_device(self, match) -> bool:
		return True

	def download_file(self, path, alt_name, reset_after=True, progress=None) -> int:
		self.started.set()
		self.gate.wait(10)
		return TRANSFER_OK

	def cleanup(self):
		pass

	def probe(self, match) -> bool:
		raise NotImplementedError


class TestFlashSession(unittest.TestCase):
	def setUp(self) -> None:
		self.tmpdir = tempfile.TemporaryDirectory()
		self.config = FlashConfig(
			firmware_dir=self.tmpdir.name,
			cache_dir=os.path.join(self.tmpdir.name, "cache"),
			work_dir=os.path.join(self.tmpdir.name, "work"),
			reconnect_delay=5,
			settle_delay=5,
		)
		for stage in self.config.stages:
			with open(os.path.join(self.tmpdir.name, stage.source_file), "wb") as file:
				file.write(b"\x00")

		self.gate = threading.Event()
		self.started = threading.Event()
		self.sink = QueueEventSink()
		self.session = FlashSession(self.config, self.sink, lambda: BlockingTransfer(self.gate, self.started))

	def tearDown(self) -> None:
		self.gate.set()
		self.session.cancel()
		self.session.join(10)
		self.tmpdir.cleanup()

	def test_single_run_at_a_time(self) -> None:
		self.assertTrue(self.session.start(ImageRequest()))
		self.assertTrue(self.started.wait(10))
		self.assertTrue(self.session.is_running())
		self.assertFalse(self.session.start(ImageRequest()))

		# the dwell after the first stage is where the cancellation lands
		self.session.cancel()
		self.gate.set()
		outcome = self.session.join(10)

		self.assertFalse(self.session.is_running())
		self.assertFalse(outcome.success)
		self.assertEqual(outcome.reason, "Flashing cancelled")
		events = self.sink.drain()
		self.assertEqual(events[-1], ("error", ("Flashing cancelled",)))

	def test_run_to_completion(self) -> None:
		self.config.reconnect_delay = 0
		self.gate.set()

		self.assertTrue(self.session.start(ImageRequest()))
		outcome = self.session.join(10)

		self.assertTrue(outcome.success)
		events = self.sink.drain()
		self.assertEqual(events[-1], ("success", ()))
		self.assertEqual([name for (name, args) in events].count("success"), 1)

		# a finished session can run again
		self.assertTrue(self.session.start(ImageRequest()))
		self.assertTrue(self.session.join(10).success)

	def test_unexpected_exception_ends_run(self) -> None:
		def broken_factory():
			raise RuntimeError("libusb exploded")

		session = FlashSession(self.config, self.sink, broken_factory)
		session.start(ImageRequest())
		outcome = session.join(10)

		self.assertFalse(outcome.success)
		self.assertIn("libusb exploded", outcome.reason)
		self.assertEqual(self.sink.drain()[-1][0], "error")


class TestProgressReporter(unittest.TestCase):
	def test_monotonic(self) -> None:
		sink = QueueEventSink()
		reporter = ProgressReporter(sink)
		for value in [0, 5, 40, 30, 50, 120]:
			reporter.update(value, "msg")

		progress = [args[0] for (name, args) in sink.drain()]
		self.assertEqual(progress, [0, 5, 40, 40, 50, 100])

	def test_single_terminal_event(self) -> None:
		sink = QueueEventSink()
		reporter = ProgressReporter(sink)
		reporter.error("first")
		reporter.success()
		reporter.error("second")
		reporter.update(100, "late")

		self.assertEqual(sink.drain(), [("error", ("first",))])
