import os
import tempfile
import threading
import unittest
import unittest.mock

from gemflash.acquire import TemporaryArtifacts
from gemflash.config import FlashConfig
from gemflash.errors import AcquisitionError
from gemflash.events import QueueEventSink
from gemflash.image import ImageRequest
from gemflash.sequencer import FlashSequencer, FlashPhase
from gemflash.transfer import TRANSFER_OK, TRANSFER_FAILED, MatchCriteria
from usb.backend.libusb1 import LIBUSB_ERROR_IO, LIBUSB_ERROR_PIPE

REQUEST = ImageRequest(board="j7", image_type="minimal", distro="debian")


class FakeTransfer():
	"""
	Records every call in a log shared by all sessions of a test.
	"""

	def __init__(self, log: list, statuses: dict = None, missing: set = (), fail_init: bool = False, probe=None):
		self.log = log
		self.statuses = statuses or {}
		self.missing = missing
		self.fail_init = fail_init
		self.probe_result = probe

	def initialize(self) -> bool:
		self.log.append(("initialize",))
		return not self.fail_init

	def find_device(self, match: MatchCriteria) -> bool:
		self.log.append(("find_device", match))
		return match.alt_name not in self.missing

	def download_file(self, path: str, alt_name: str, reset_after: bool = True, progress=None) -> int:
		self.log.append(("download_file", os.path.basename(path), alt_name, reset_after))
		if progress is not None:
			for fraction in [0.25, 0.5, 1.0]:
				progress(fraction)
		return self.statuses.get(alt_name, TRANSFER_OK)

	def cleanup(self):
		self.log.append(("cleanup",))

	def probe(self, match: MatchCriteria) -> bool:
		self.log.append(("probe", match))
		if self.probe_result is None:
			raise NotImplementedError
		return self.probe_result


class FakeAcquirer():
	def __init__(self, work_dir: str, error: str = None):
		self.work_dir = work_dir
		self.error = error
		self.reporter = None
		self.cancel = None
		self.calls = 0

	def acquire(self, request: ImageRequest, artifacts: TemporaryArtifacts) -> str:
		self.calls += 1
		artifacts.extracted_path = os.path.join(self.work_dir, "image.img")
		with open(artifacts.extracted_path, "wb") as file:
			file.write(b"image")
		if self.error:
			raise AcquisitionError(self.error)
		self.reporter.update(50, "Image extracted successfully")
		return artifacts.extracted_path

	def close(self):
		pass


class TestFlashSequencer(unittest.TestCase):
	def setUp(self) -> None:
		self.tmpdir = tempfile.TemporaryDirectory()
		self.firmware_dir = os.path.join(self.tmpdir.name, "binaries")
		os.makedirs(self.firmware_dir)
		self.config = FlashConfig(
			firmware_dir=self.firmware_dir,
			cache_dir=os.path.join(self.tmpdir.name, "cache"),
			work_dir=self.tmpdir.name,
			reconnect_delay=0,
			image_mode_delay=0,
			settle_delay=0,
			poll_interval=0,
		)
		for stage in self.config.stages:
			with open(os.path.join(self.firmware_dir, stage.source_file), "wb") as file:
				file.write(b"\x00" * 16)

		self.log = []
		self.transfer_args = {}
		self.sink = QueueEventSink()
		self.acquirer = FakeAcquirer(self.tmpdir.name)

	def tearDown(self) -> None:
		self.tmpdir.cleanup()

	def new_sequencer(self, request: ImageRequest = REQUEST, cancel: threading.Event = None) -> FlashSequencer:
		factory = lambda: FakeTransfer(self.log, **self.transfer_args)
		return FlashSequencer(self.config, request, self.sink, factory, self.acquirer, cancel)

	def downloads(self) -> list:
		return [entry[1:] for entry in self.log if entry[0] == "download_file"]

	def check_event_order(self, events: list):
		progress = [args[0] for (name, args) in events if name == "progress"]
		self.assertEqual(progress, sorted(progress))
		terminal = [name for (name, args) in events if name in ["success", "error"]]
		self.assertEqual(len(terminal), 1)
		self.assertIn(events[-1][0], ["success", "error"])
		return progress

	def test_full_run(self) -> None:
		sequencer = self.new_sequencer()
		outcome = sequencer.run()

		self.assertTrue(outcome.success)
		self.assertEqual(sequencer.phase, FlashPhase.DONE)
		self.assertEqual(self.downloads(), [
			("tiboot3.bin", "bootloader", True),
			("tispl.bin", "tispl.bin", True),
			("u-boot.img", "u-boot.img", True),
			("image.img", "rawemmc", True),
		])
		# one fresh session per stage
		self.assertEqual(self.log.count(("initialize",)), 4)
		self.assertEqual(self.log.count(("cleanup",)), 4)
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))

		events = self.sink.drain()
		progress = self.check_event_order(events)
		self.assertEqual(events[-1], ("success", ()))
		self.assertEqual(progress[0], 0)
		self.assertEqual(progress[-1], 100)
		for value in [5, 50, 55, 75, 78, 80]:
			self.assertIn(value, progress)
		self.assertTrue(any(80 < value < 100 for value in progress))

	def test_incomplete_request_skips_image(self) -> None:
		requests = [
			ImageRequest(),
			ImageRequest(board="j7", image_type="minimal"),
			ImageRequest(image_type="minimal", distro="debian"),
			ImageRequest(board="j7", distro="debian", variant="full"),
		]
		for request in requests:
			with self.subTest(request=request):
				self.log.clear()
				self.sink.drain()
				outcome = self.new_sequencer(request).run()

				self.assertTrue(outcome.success)
				self.assertEqual([entry[1] for entry in self.downloads()], ["bootloader", "tispl.bin", "u-boot.img"])
				progress = self.check_event_order(self.sink.drain())
				self.assertEqual(progress[-1], 100)
				self.assertNotIn(80, progress)

		self.assertEqual(self.acquirer.calls, 0)

	def test_missing_stage_file(self) -> None:
		missing = os.path.join(self.firmware_dir, "tispl.bin")
		os.remove(missing)

		outcome = self.new_sequencer().run()

		self.assertFalse(outcome.success)
		self.assertIn(missing, outcome.reason)
		# no USB session was opened and the downloaded image is gone
		self.assertEqual(self.log, [])
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))
		events = self.sink.drain()
		self.check_event_order(events)
		self.assertEqual(events[-1], ("error", (f"Bootloader file not found: {missing}",)))

	def test_acquisition_failure(self) -> None:
		self.acquirer.error = "Failed to download system image from: https://example.invalid"

		sequencer = self.new_sequencer()
		outcome = sequencer.run()

		self.assertFalse(outcome.success)
		self.assertEqual(outcome.reason, "Failed to download system image from: https://example.invalid")
		self.assertEqual(sequencer.phase, FlashPhase.FAILED)
		self.assertEqual(self.log, [])
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))

	def test_failed_cleanup_still_reports_error(self) -> None:
		self.acquirer.error = "Decompression failed: Truncated archive"

		with unittest.mock.patch("gemflash.utils.os.remove", side_effect=PermissionError("denied")):
			outcome = self.new_sequencer().run()

		self.assertFalse(outcome.success)
		events = self.sink.drain()
		self.check_event_order(events)
		self.assertEqual(events[-1], ("error", ("Decompression failed: Truncated archive",)))

	def test_benign_post_transfer_error(self) -> None:
		self.transfer_args = {"statuses": {"bootloader": LIBUSB_ERROR_IO, "rawemmc": LIBUSB_ERROR_IO}}

		outcome = self.new_sequencer().run()

		self.assertTrue(outcome.success)
		self.assertEqual(len(self.downloads()), 4)

	def test_transfer_failure(self) -> None:
		for code in [TRANSFER_FAILED, LIBUSB_ERROR_PIPE]:
			with self.subTest(code=code):
				self.log.clear()
				self.sink.drain()
				self.transfer_args = {"statuses": {"tispl.bin": code}}

				outcome = self.new_sequencer().run()

				self.assertFalse(outcome.success)
				self.assertIn("tispl.bin", outcome.reason)
				# no retry, nothing after the failed stage
				self.assertEqual([entry[1] for entry in self.downloads()], ["bootloader", "tispl.bin"])
				self.assertEqual(self.log[-1], ("cleanup",))
				self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))
				self.check_event_order(self.sink.drain())

	def test_image_transfer_failure(self) -> None:
		self.transfer_args = {"statuses": {"rawemmc": TRANSFER_FAILED}}

		outcome = self.new_sequencer().run()

		self.assertFalse(outcome.success)
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))
		self.check_event_order(self.sink.drain())

	def test_device_not_found(self) -> None:
		self.transfer_args = {"missing": {"u-boot.img"}}

		outcome = self.new_sequencer().run()

		self.assertFalse(outcome.success)
		self.assertEqual(outcome.reason, "Failed to find DFU device for u-boot.img (alt: u-boot.img)")
		self.assertEqual(len(self.downloads()), 2)

	def test_initialize_failure(self) -> None:
		self.transfer_args = {"fail_init": True}

		outcome = self.new_sequencer(ImageRequest()).run()

		self.assertFalse(outcome.success)
		self.assertEqual(outcome.reason, "Failed to initialize DFU for tiboot3.bin")
		self.assertEqual(self.log, [("initialize",), ("cleanup",)])

	def test_match_criteria(self) -> None:
		self.new_sequencer(ImageRequest()).run()

		matches = [entry[1] for entry in self.log if entry[0] == "find_device"]
		self.assertEqual(matches, [
			MatchCriteria(0x0451, 0x6165, "bootloader"),
			MatchCriteria(0x0451, 0x6165, "tispl.bin"),
			MatchCriteria(0x0451, 0x6165, "u-boot.img"),
		])

	def test_reconnect_wait_returns_on_probe(self) -> None:
		self.config.reconnect_delay = 30
		self.config.image_mode_delay = 30
		self.transfer_args = {"probe": True}

		outcome = self.new_sequencer().run()

		self.assertTrue(outcome.success)
		probes = [entry[1].alt_name for entry in self.log if entry[0] == "probe"]
		self.assertEqual(probes, ["tispl.bin", "u-boot.img", "rawemmc"])

	def test_reconnect_wait_without_probe(self) -> None:
		self.config.reconnect_delay = 0.01
		self.config.image_mode_delay = 0.01

		outcome = self.new_sequencer().run()

		self.assertTrue(outcome.success)
		self.assertEqual(len(self.downloads()), 4)

	def test_cancel(self) -> None:
		cancel = threading.Event()
		cancel.set()

		outcome = self.new_sequencer(cancel=cancel).run()

		self.assertFalse(outcome.success)
		self.assertEqual(outcome.reason, "Flashing cancelled")
		self.assertEqual(self.downloads(), [])
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))

	def test_cleanup_is_idempotent(self) -> None:
		artifacts = TemporaryArtifacts()
		artifacts.extracted_path = os.path.join(self.tmpdir.name, "image.img")
		artifacts.archive_path = os.path.join(self.tmpdir.name, "image.img.xz")
		for path in [artifacts.extracted_path, artifacts.archive_path]:
			with open(path, "wb") as file:
				file.write(b"data")

		artifacts.cleanup()
		artifacts.cleanup()
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img")))
		self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "image.img.xz")))

	def test_retained_archive_is_kept(self) -> None:
		cached = os.path.join(self.tmpdir.name, "lastdfudownload.cache")
		with open(cached, "wb") as file:
			file.write(b"data")
		artifacts = TemporaryArtifacts(archive_path=cached, retained_path=cached)

		artifacts.cleanup()
		self.assertTrue(os.path.exists(cached))
