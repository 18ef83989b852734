import os
import time
import threading
from dataclasses import dataclass
from enum import Enum
import logging
logger = logging.getLogger("gemflash")

from gemflash.acquire import ImageAcquirer, TemporaryArtifacts, check_cancel
from gemflash.cache import ImageCache
from gemflash.config import FlashConfig, StageDescriptor
from gemflash.errors import GemflashError, StageFileMissing, DeviceNotFound, TransferError, FlashCancelled
from gemflash.events import EventSink, ProgressReporter
from gemflash.image import ImageRequest
from gemflash.transfer import DFUTransfer, MatchCriteria, transfer_succeeded

PREP_START = 0
ACQUIRE_START = 5
VERIFY_START = 52
STAGES_START = 55
STAGES_END = 75
IMAGE_MODE_WAIT = 78
IMAGE_START = 80
IMAGE_END = 100

class FlashPhase(Enum):
	FAILED = -1
	IDLE = 0
	ACQUIRING = 1
	VERIFYING_STAGE_FILES = 2
	FLASHING_BOOTLOADER = 3
	AWAITING_RECONNECT = 4
	AWAITING_IMAGE_MODE = 5
	FLASHING_IMAGE = 6
	DONE = 7

@dataclass(frozen=True)
class RunOutcome:
	success: bool
	reason: str = None

	@classmethod
	def ok(cls):
		return cls(True)

	@classmethod
	def failed(cls, reason: str):
		return cls(False, reason)

class FlashSequencer():
	"""
	Walks one device through the bootloader stages and, when an image was
	requested, the raw storage stage. The device resets after every stage,
	so each stage gets its own USB session.

	Every failure is terminal: nothing is retried here, the transfer
	primitive only retries device discovery.
	"""

	def __init__(self, config: FlashConfig, request: ImageRequest, events: EventSink, transfer_factory=None, acquirer: ImageAcquirer = None, cancel: threading.Event = None):
		self.config = config
		self.request = request
		self.reporter = ProgressReporter(events)
		self.cancel = cancel if cancel is not None else threading.Event()
		self.phase = FlashPhase.IDLE
		self.artifacts = TemporaryArtifacts()

		if transfer_factory is None:
			transfer_factory = lambda: DFUTransfer(config.find_retries, config.find_interval, config.usb_timeout)
		self.transfer_factory = transfer_factory

		if acquirer is None:
			acquirer = ImageAcquirer(config, ImageCache.from_config(config), self.reporter, cancel=self.cancel)
		else:
			acquirer.reporter = self.reporter
			acquirer.cancel = self.cancel
		self.acquirer = acquirer

	def set_phase(self, new_phase: FlashPhase):
		logger.debug(f"flash phase: {self.phase} -> {new_phase}")
		self.phase = new_phase

	def match(self, alt_name: str) -> MatchCriteria:
		return MatchCriteria(self.config.usb_vid, self.config.usb_pid, alt_name)

	def run(self) -> RunOutcome:
		try:
			self.flash()
		except GemflashError as e:
			return self.fail(str(e))
		finally:
			self.acquirer.close()

		self.artifacts.cleanup()
		self.set_phase(FlashPhase.DONE)
		self.reporter.success()
		return RunOutcome.ok()

	def fail(self, reason: str) -> RunOutcome:
		logger.error(f"Flashing failed in phase {self.phase.name}: {reason}")
		try:
			self.artifacts.cleanup()
		finally:
			self.set_phase(FlashPhase.FAILED)
			self.reporter.error(reason)
		return RunOutcome.failed(reason)

	def flash(self):
		self.reporter.status("Initializing DFU...")
		self.reporter.update(PREP_START, "Initializing DFU...")

		image_path = None
		if self.request.is_complete():
			self.set_phase(FlashPhase.ACQUIRING)
			self.reporter.update(ACQUIRE_START, "Preparing to download system image...")
			image_path = self.acquirer.acquire(self.request, self.artifacts)
		else:
			logger.info("No complete image selection, only bootloader files will be sent")

		self.set_phase(FlashPhase.VERIFYING_STAGE_FILES)
		self.reporter.update(VERIFY_START, "Preparing bootloader files...")
		stage_paths = self.verify_stage_files()

		self.reporter.update(STAGES_START, "Sending bootloader files...")
		self.flash_bootloaders(stage_paths)
		self.reporter.update(STAGES_END, "Bootloader files sent successfully")

		if image_path is None:
			self.reporter.update(IMAGE_END, "All bootloader files sent successfully. Device should boot now.")
			return

		self.set_phase(FlashPhase.AWAITING_IMAGE_MODE)
		self.reporter.update(IMAGE_MODE_WAIT, "Waiting for device to enter image transfer mode...")
		self.wait_for_device(self.match(self.config.image_alt_name), self.config.image_mode_delay)

		self.set_phase(FlashPhase.FLASHING_IMAGE)
		self.reporter.status("Preparing to send image to device...")
		self.reporter.update(IMAGE_START, "Sending system image to device (this may take several minutes)...")
		image_stage = StageDescriptor(image_path, self.config.image_alt_name, True)
		self.flash_stage(image_stage, image_path, "system image", self.image_progress)

		self.artifacts.remove_extracted()
		self.reporter.update(IMAGE_END, "System image sent successfully!")

	def verify_stage_files(self) -> list:
		paths = []
		for stage in self.config.stages:
			path = os.path.join(self.config.firmware_dir, stage.source_file)
			if not os.path.isfile(path):
				raise StageFileMissing(path)
			paths.append(path)
		return paths

	def flash_bootloaders(self, stage_paths: list):
		stages = self.config.stages
		current = STAGES_START
		per_stage = (STAGES_END - STAGES_START) // len(stages)

		for (i, stage) in enumerate(stages):
			check_cancel(self.cancel)
			self.set_phase(FlashPhase.FLASHING_BOOTLOADER)
			self.reporter.update(current, f"Sending {stage.source_file}...")

			self.flash_stage(stage, stage_paths[i], stage.source_file)

			current += per_stage
			self.reporter.update(current, f"{stage.source_file} sent successfully")

			if i < len(stages) - 1:
				self.set_phase(FlashPhase.AWAITING_RECONNECT)
				self.reporter.update(current, "Waiting for device to reconnect...")
				self.wait_for_device(self.match(stages[i + 1].alt_name), self.config.reconnect_delay)

	def flash_stage(self, stage: StageDescriptor, path: str, label: str, progress=None):
		check_cancel(self.cancel)
		match = self.match(stage.alt_name)
		transfer = self.transfer_factory()

		try:
			if not transfer.initialize():
				raise TransferError(f"Failed to initialize DFU for {label}")

			if not transfer.find_device(match):
				raise DeviceNotFound(f"Failed to find DFU device for {label} (alt: {stage.alt_name})")

			status = transfer.download_file(path, stage.alt_name, stage.reset_after, progress)
			if not transfer_succeeded(status):
				raise TransferError(f"Failed to download {label} (error {status})")
		finally:
			transfer.cleanup()

		logger.info(f"Stage {label} done")

	def image_progress(self, fraction: float):
		percentage = IMAGE_START + int(fraction * (IMAGE_END - IMAGE_START - 1))
		if percentage > self.reporter.percentage:
			self.reporter.update(percentage, f"Sending system image: {int(fraction * 100)}%")

	def sleep(self, duration: float):
		if duration > 0 and self.cancel.wait(duration):
			raise FlashCancelled()
		check_cancel(self.cancel)

	def wait_for_device(self, match: MatchCriteria, dwell: float):
		"""
		Give the device up to dwell seconds to re-enumerate, returning
		early once it shows up with the expected altsetting. Transfer
		primitives that can't probe get the full dwell.
		"""
		if dwell <= 0:
			check_cancel(self.cancel)
			return

		deadline = time.monotonic() + dwell
		# a resetting device can still be listed for a short while
		self.sleep(min(self.config.settle_delay, dwell))

		transfer = self.transfer_factory()
		try:
			if not transfer.initialize():
				self.sleep(deadline - time.monotonic())
				return

			while True:
				remaining = deadline - time.monotonic()
				if remaining <= 0:
					logger.debug(f"Dwell expired while waiting for {match}")
					return
				try:
					present = transfer.probe(match)
				except NotImplementedError:
					self.sleep(remaining)
					return
				if present:
					logger.info(f"Device {match} is back")
					return
				self.sleep(min(self.config.poll_interval, remaining))
		finally:
			transfer.cleanup()
