import time
from dataclasses import dataclass
import usb.core
import usb.util
import usb.backend.libusb1
from usb.backend.libusb1 import LIBUSB_ERROR_IO, LIBUSB_ERROR_NOT_FOUND, LIBUSB_ERROR_NO_DEVICE, LIBUSB_ERROR_OTHER
import logging
logger = logging.getLogger("gemflash")

from gemflash.protocols import dfu
from gemflash.usb import GemflashUSBContext
from gemflash.utils import prettify_usb_ids

TRANSFER_OK = 0
# the transfer did not complete, whatever the underlying error was
TRANSFER_FAILED = LIBUSB_ERROR_OTHER

# Devices running a freshly downloaded stage often reset before the last
# GETSTATUS of the manifestation phase gets its answer, which libusb
# reports as an I/O error. The data has been acknowledged by then.
BENIGN_POST_TRANSFER_CODES = frozenset([LIBUSB_ERROR_IO])

def is_benign_post_transfer_status(code: int) -> bool:
	return code in BENIGN_POST_TRANSFER_CODES

def transfer_succeeded(code: int) -> bool:
	return code == TRANSFER_OK or is_benign_post_transfer_status(code)

def usb_error_code(err: usb.core.USBError) -> int:
	code = getattr(err, "backend_error_code", None)
	return code if isinstance(code, int) and code < 0 else TRANSFER_FAILED

@dataclass(frozen=True)
class MatchCriteria:
	vid: int
	pid: int
	alt_name: str

	def __str__(self):
		return f"{prettify_usb_ids(self.vid, self.pid)} alt:{self.alt_name}"

class TransferPrimitive():
	"""
	One USB session with one device and one DFU altsetting.

	initialize() -> find_device() -> download_file() -> cleanup(), with
	cleanup() always safe to call, any number of times.
	"""

	def initialize(self) -> bool:
		raise NotImplementedError

	def find_device(self, match: MatchCriteria) -> bool:
		raise NotImplementedError

	def download_file(self, path: str, alt_name: str, reset_after: bool = True, progress=None) -> int:
		raise NotImplementedError

	def cleanup(self):
		raise NotImplementedError

	def probe(self, match: MatchCriteria) -> bool:
		"""
		Single, non-retrying check that the device is present with the
		requested altsetting. Implementations that can't tell raise
		NotImplementedError.
		"""
		raise NotImplementedError

class DFUTransfer(TransferPrimitive):
	def __init__(self, find_retries: int = 15, find_interval: float = 1.0, usb_timeout: int = 60000):
		self.find_retries = find_retries
		self.find_interval = find_interval
		self.usb_timeout = usb_timeout
		self.backend = None
		self.dev = None
		self.intf = None
		self.initialized = False

	def initialize(self) -> bool:
		if self.initialized:
			return True

		try:
			self.backend = usb.backend.libusb1.get_backend()
		except usb.core.USBError as e:
			logger.error(f"Failed to initialize libusb: {e}")
			return False

		if self.backend is None:
			logger.error("Failed to initialize libusb: no backend available")
			return False

		self.initialized = True
		logger.debug("DFU initialized successfully")
		return True

	def scan(self, match: MatchCriteria):
		GemflashUSBContext.rescan(self.backend)
		for dev in GemflashUSBContext.find(idVendor=match.vid, idProduct=match.pid):
			try:
				intf = dfu.search_altsetting(dev, match.alt_name)
			except (usb.core.USBError, ValueError, NotImplementedError) as e:
				logger.debug(f"Failed to read descriptors of {match}: {e}")
				continue
			if intf is not None:
				return (dev, intf)
		return (None, None)

	def find_device(self, match: MatchCriteria) -> bool:
		if not self.initialized:
			logger.error("DFU not initialized")
			return False

		# the device may take some time to enumerate after a stage transition
		for attempt in range(self.find_retries):
			if attempt > 0:
				logger.info(f"USB retry {attempt}/{self.find_retries - 1}, searching for DFU device {match}...")
				time.sleep(self.find_interval)

			(dev, intf) = self.scan(match)
			if dev is not None:
				self.dev = dev
				self.intf = intf
				self.dev.default_timeout = self.usb_timeout
				logger.info(f"Found DFU device: {match} interface:{intf.bInterfaceNumber} altsetting:{intf.bAlternateSetting}")
				return True

		logger.error(f"No DFU device found for {match} after {self.find_retries} attempts")
		return False

	def probe(self, match: MatchCriteria) -> bool:
		if not self.initialized:
			return False
		try:
			(dev, intf) = self.scan(match)
		except usb.core.USBError:
			return False
		return dev is not None

	def download_file(self, path: str, alt_name: str, reset_after: bool = True, progress=None) -> int:
		if self.dev is None:
			logger.error("No DFU device available")
			return TRANSFER_FAILED

		intf_num = self.intf.bInterfaceNumber
		dfu_cmd = dfu.DFU(self.dev, self.intf)

		try:
			logger.info("Claiming USB DFU Interface...")
			usb.util.claim_interface(self.dev, intf_num)
			logger.info(f"Setting Alternate Interface #{self.intf.bAlternateSetting}...")
			dfu_cmd.set_altsetting()
			logger.info("Determining device status...")
			dfu_cmd.prepare()
		except (usb.core.USBError, dfu.DFUError) as e:
			logger.error(f"Failed to prepare DFU interface {alt_name}: {e}")
			self.release_interface(intf_num)
			return TRANSFER_FAILED

		logger.info(f"Downloading {path} to altsetting {alt_name}...")
		try:
			with open(path, "rb") as file:
				size = file.seek(0, 2)
				file.seek(0)
				logger.debug(f"DFU download size:0x{size:x} transfer size:{dfu_cmd.transfer_size}")
				dfu_cmd.download(file, size, progress)
		except (OSError, usb.core.USBError, dfu.DFUError) as e:
			logger.error(f"Download failed: {e}")
			self.release_interface(intf_num)
			return TRANSFER_FAILED

		status = TRANSFER_OK
		try:
			dfu_cmd.manifest()
		except usb.core.USBError as e:
			status = usb_error_code(e)
			logger.info(f"Could not read status after end of transfer: {e}")
		except dfu.DFUError as e:
			logger.error(f"Manifestation failed: {e}")
			status = TRANSFER_FAILED

		self.release_interface(intf_num)

		if not transfer_succeeded(status):
			return status

		logger.info(f"Download complete (status: {status})")

		if reset_after:
			self.detach_and_reset(dfu_cmd)

		return status

	def release_interface(self, intf_num: int):
		try:
			usb.util.release_interface(self.dev, intf_num)
		except (usb.core.USBError, ReferenceError):
			pass

	def detach_and_reset(self, dfu_cmd: dfu.DFU):
		try:
			dfu_cmd.detach()
		except usb.core.USBError as e:
			# some devices reset on their own without answering
			logger.warning(f"Detach failed: {e}")

		logger.info("Resetting USB to switch back to Run-Time mode")
		try:
			self.dev.reset()
		except usb.core.USBError as e:
			if usb_error_code(e) not in [LIBUSB_ERROR_NOT_FOUND, LIBUSB_ERROR_NO_DEVICE]:
				logger.warning(f"Error resetting device: {e}")
		except ReferenceError:
			pass

		self.dispose()

	def dispose(self):
		if self.dev is not None:
			try:
				usb.util.dispose_resources(self.dev)
			except (usb.core.USBError, ReferenceError):
				pass
		self.dev = None
		self.intf = None

	def cleanup(self):
		self.dispose()
		GemflashUSBContext.release()
		self.backend = None
		self.initialized = False

def list_devices(vid: int = None, pid: int = None) -> list:
	backend = usb.backend.libusb1.get_backend()
	if backend is None:
		return []

	filters = {}
	if vid is not None:
		filters["idVendor"] = vid
	if pid is not None:
		filters["idProduct"] = pid

	lines = []
	GemflashUSBContext.rescan(backend)
	for dev in GemflashUSBContext.find(**filters):
		try:
			altsettings = dfu.list_altsettings(dev)
		except (usb.core.USBError, ValueError, NotImplementedError):
			continue
		for (intf_num, alt, name) in altsettings:
			line = f"Device: {prettify_usb_ids(dev.idVendor, dev.idProduct)} Interface {intf_num} Alt {alt}"
			if name:
				line += f" \"{name}\""
			lines.append(line)
	GemflashUSBContext.release()

	return lines
