import os
import errno
import hashlib
from dataclasses import dataclass
import yaml
import logging
logger = logging.getLogger("gemflash")

from gemflash.utils import remove_file, file_is_usable

HASH_KEY = "last_download_sha256"
ENABLED_KEY = "enabled"

def fingerprint(filename: str) -> str:
	# derived from the name, not the content: file names are versioned
	return hashlib.sha256(filename.encode("utf-8")).hexdigest()

@dataclass
class CacheEntry:
	fingerprint: str
	payload_path: str
	enabled: bool = True

class CacheWriteHandle():
	def __init__(self, file, path: str, filename: str):
		self.file = file
		self.path = path
		self.filename = filename
		self.written = 0

	@property
	def closed(self) -> bool:
		return self.file.closed

class ImageCache():
	"""
	Single slot store for the last downloaded compressed image.

	The slot is keyed by the SHA-256 of the image file name, which is
	persisted in a small yaml store next to the payload. A hit requires a
	matching fingerprint and a readable, non-empty payload. Write errors
	never propagate: they disable caching for the rest of the run.
	"""

	def __init__(self, payload_path: str, store_path: str, enabled: bool = True):
		self.payload_path = payload_path
		self.store_path = store_path

		store = self.read_store()
		self.enabled = enabled and bool(store.get(ENABLED_KEY, True))
		self.cached_hash = store.get(HASH_KEY, None)

		if self.cached_hash is not None and not file_is_usable(self.payload_path):
			logger.info("Cached image payload is missing, forgetting cache fingerprint")
			self.invalidate()

		logger.debug(f"DFU cache file: {self.payload_path}")
		logger.debug(f"DFU caching enabled: {self.enabled}")

	@classmethod
	def from_config(cls, config):
		return cls(config.cache_file, config.cache_store, enabled=config.cache_enabled)

	def read_store(self) -> dict:
		if not os.path.exists(self.store_path):
			return {}

		try:
			with open(self.store_path, "r") as file:
				store = yaml.safe_load(file)
		except (OSError, yaml.YAMLError) as e:
			logger.warning(f"Could not read cache store {self.store_path}: {e}")
			return {}

		return store if isinstance(store, dict) else {}

	def write_store(self, key: str, value):
		store = self.read_store()
		if value is None:
			store.pop(key, None)
		else:
			store[key] = value

		os.makedirs(os.path.dirname(self.store_path) or ".", exist_ok=True)
		tmp_path = self.store_path + ".tmp"
		with open(tmp_path, "w") as file:
			yaml.dump(store, file, default_flow_style=False)
		os.replace(tmp_path, self.store_path)

	def is_enabled(self) -> bool:
		return self.enabled

	def disable(self):
		# only for the current run, the persisted setting is left alone
		self.enabled = False

	def invalidate(self):
		self.cached_hash = None
		try:
			self.write_store(HASH_KEY, None)
		except OSError as e:
			logger.warning(f"Could not clear cache fingerprint: {e}")

	def lookup(self, filename: str):
		expected = fingerprint(filename)

		if self.enabled and self.cached_hash == expected and file_is_usable(self.payload_path):
			logger.info(f"Using cached DFU image for {filename}")
			return CacheEntry(expected, self.payload_path, self.enabled)

		if self.cached_hash is not None:
			logger.debug(f"Cache miss for {filename}")
			self.invalidate()

		return None

	def begin_write(self, filename: str, expected_size: int = None):
		"""
		Open the slot for writing, truncating the previous payload. Returns
		None and disables caching if the slot cannot be opened.
		"""
		if not self.enabled:
			return None

		try:
			os.makedirs(os.path.dirname(self.payload_path) or ".", exist_ok=True)
			remove_file(self.payload_path)
			file = open(self.payload_path, "wb")
		except OSError as e:
			logger.warning(f"Error opening DFU cache file for writing ({e}). Disabling caching.")
			self.disable()
			return None

		if expected_size:
			try:
				preallocate(file, expected_size)
			except OSError as e:
				logger.warning(f"Could not pre-allocate {expected_size} bytes for DFU cache file ({e}). Disabling caching.")
				file.close()
				remove_file(self.payload_path)
				self.disable()
				return None

		return CacheWriteHandle(file, self.payload_path, filename)

	def append(self, handle: CacheWriteHandle, data: bytes) -> bool:
		if handle is None or handle.closed or not self.enabled:
			return False

		try:
			handle.file.write(data)
		except OSError as e:
			logger.warning(f"Error writing to DFU cache file ({e}). Disabling caching.")
			self.discard(handle)
			self.disable()
			return False

		handle.written += len(data)
		return True

	def discard(self, handle: CacheWriteHandle):
		if handle is None:
			return

		if not handle.closed:
			handle.file.close()
		remove_file(handle.path)

	def finish_write(self, handle: CacheWriteHandle) -> bool:
		if handle is None or handle.closed or not self.enabled:
			return False

		try:
			# drop pre-allocated space that was never written to
			handle.file.truncate(handle.written)
			handle.file.close()
		except OSError as e:
			logger.warning(f"Error closing DFU cache file ({e}). Disabling caching.")
			self.discard(handle)
			self.disable()
			return False

		return True

	def commit(self, filename: str) -> bool:
		expected = fingerprint(filename)
		try:
			self.write_store(HASH_KEY, expected)
		except OSError as e:
			logger.warning(f"Could not record DFU cache fingerprint ({e}). Disabling caching.")
			self.disable()
			return False

		self.cached_hash = expected
		logger.debug(f"DFU cache hash updated: {expected}")
		return True

def preallocate(file, size: int):
	if not hasattr(os, "posix_fallocate"):
		file.truncate(size)
		file.seek(0)
		return

	try:
		os.posix_fallocate(file.fileno(), 0, size)
	except OSError as e:
		# filesystems without fallocate support get a sparse file instead
		if e.errno == errno.ENOSPC:
			raise
		file.truncate(size)
	file.seek(0)
