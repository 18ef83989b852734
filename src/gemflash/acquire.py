import os
import lzma
import threading
from dataclasses import dataclass
import httpx
import logging
logger = logging.getLogger("gemflash")

from gemflash.cache import ImageCache
from gemflash.config import FlashConfig
from gemflash.errors import AcquisitionError, CorruptArchive, FlashCancelled
from gemflash.events import ProgressReporter
from gemflash.image import ImageRequest, ResolvedImage, resolve_image
from gemflash.utils import remove_file, file_chunks, to_mib

DOWNLOAD_START = 5
DOWNLOAD_END = 40
EXTRACT_START = 40
EXTRACT_END = 50

XZ_BLOCK_SIZE = 65536
# extraction progress is scaled on a nominal image size, real sizes are unknown up front
EXTRACT_NOMINAL_SIZE = 4 * 1024 * 1024 * 1024

@dataclass
class TemporaryArtifacts:
	archive_path: str = None
	extracted_path: str = None
	retained_path: str = None

	def archive_is_retained(self) -> bool:
		return self.archive_path is not None and self.archive_path == self.retained_path

	def remove_archive(self):
		if self.archive_path is None:
			return
		if self.archive_is_retained():
			logger.debug(f"Keeping cached compressed file: {self.archive_path}")
		else:
			logger.debug(f"Removing temp compressed file: {self.archive_path}")
			remove_file(self.archive_path)
		self.archive_path = None

	def remove_extracted(self):
		if self.extracted_path is None:
			return
		logger.debug(f"Removing temp extracted file: {self.extracted_path}")
		remove_file(self.extracted_path)
		self.extracted_path = None

	def cleanup(self):
		self.remove_archive()
		self.remove_extracted()

def check_cancel(cancel: threading.Event):
	if cancel is not None and cancel.is_set():
		raise FlashCancelled()

def extract_xz(src_path: str, dst_path: str, reporter: ProgressReporter = None, cancel: threading.Event = None) -> int:
	"""
	Decompress a .xz file made of one or more concatenated streams. Input
	is read and output is flushed in XZ_BLOCK_SIZE blocks. The output file
	is removed on any failure. Returns the number of bytes written.
	"""
	written = 0
	last_progress = EXTRACT_START
	decomp = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
	done = False

	try:
		with open(src_path, "rb") as src, open(dst_path, "wb") as dst:
			for block in file_chunks(src, XZ_BLOCK_SIZE):
				data = block
				while True:
					check_cancel(cancel)

					if decomp.eof:
						# stream padding is made of null bytes
						data = decomp.unused_data.lstrip(b"\x00") + data.lstrip(b"\x00")
						if data == b"":
							break
						decomp = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)

					out = decomp.decompress(data, max_length=XZ_BLOCK_SIZE)
					data = b""
					if out:
						dst.write(out)
						written += len(out)

						progress = EXTRACT_START + min(EXTRACT_END - EXTRACT_START, written * 10 // EXTRACT_NOMINAL_SIZE)
						if reporter is not None and progress > last_progress:
							last_progress = progress
							reporter.update(progress, f"Extracted: {to_mib(written)} MB")

					if decomp.eof:
						if decomp.unused_data.lstrip(b"\x00") == b"":
							break
					elif decomp.needs_input:
						break

			done = decomp.eof
	except lzma.LZMAError as e:
		remove_file(dst_path)
		raise CorruptArchive(f"Decompression failed: {e}")
	except MemoryError:
		remove_file(dst_path)
		raise AcquisitionError("Decompression failed: Memory error")
	except OSError as e:
		remove_file(dst_path)
		raise AcquisitionError(f"Failed to extract image from archive: {e}")
	except FlashCancelled:
		remove_file(dst_path)
		raise

	if not done:
		remove_file(dst_path)
		raise CorruptArchive("Decompression failed: Truncated archive")

	logger.info(f"Extracted {written} bytes successfully")
	return written

class ImageAcquirer():
	"""
	Turns an ImageRequest into a local decompressed image, going through
	the image cache and the network as needed.
	"""

	def __init__(self, config: FlashConfig, cache: ImageCache, reporter: ProgressReporter, client: httpx.Client = None, cancel: threading.Event = None):
		self.config = config
		self.cache = cache
		self.reporter = reporter
		self.client = client
		self.cancel = cancel

	def get_client(self) -> httpx.Client:
		if self.client is None:
			self.client = httpx.Client(timeout=self.config.http_timeout, follow_redirects=True)
		return self.client

	def acquire(self, request: ImageRequest, artifacts: TemporaryArtifacts) -> str:
		image = resolve_image(request, self.config)
		logger.info(f"DFU image URL: {image.url}")
		self.reporter.status(f"Downloading system image: {image.filename}")
		os.makedirs(self.config.work_dir, exist_ok=True)

		entry = self.cache.lookup(image.filename) if self.cache.is_enabled() else None
		if entry is not None:
			self.reporter.update(DOWNLOAD_END, "Using cached image file")
			artifacts.archive_path = entry.payload_path
			artifacts.retained_path = entry.payload_path
		else:
			self.download(image, artifacts)

		check_cancel(self.cancel)
		self.reporter.update(EXTRACT_START, "Extracting image from archive...")
		self.reporter.status("Extracting image from archive...")
		artifacts.extracted_path = os.path.join(self.config.work_dir, image.extracted_name)
		try:
			extract_xz(artifacts.archive_path, artifacts.extracted_path, self.reporter, self.cancel)
		except CorruptArchive:
			if artifacts.archive_is_retained():
				# don't serve a broken archive from the cache again
				self.cache.invalidate()
			raise

		artifacts.remove_archive()
		self.reporter.update(EXTRACT_END, "Image extracted successfully")
		return artifacts.extracted_path

	def download(self, image: ResolvedImage, artifacts: TemporaryArtifacts):
		"""
		Stream the archive into the cache slot when caching is active, or
		into a scratch file in the work directory otherwise. A cache slot
		that can't be opened falls back to the scratch file, a cache slot
		that fails mid-download fails the download.
		"""
		self.reporter.status(f"Downloading from: {image.url}")
		logger.info(f"Downloading image from: {image.url}")

		handle = None
		received = 0
		try:
			with self.get_client().stream("GET", image.url) as response:
				if not response.is_success:
					raise AcquisitionError(f"Failed to download system image from: {image.url} (HTTP {response.status_code})")

				total = int(response.headers.get("Content-Length", 0) or 0)
				if self.cache.is_enabled():
					handle = self.cache.begin_write(image.filename, total)

				if handle is not None:
					artifacts.archive_path = handle.path
					logger.debug(f"Output path: {handle.path}")
					received = self.receive(response, total, lambda chunk: self.write_cache(handle, chunk))
				else:
					artifacts.archive_path = os.path.join(self.config.work_dir, image.filename)
					logger.debug(f"Output path: {artifacts.archive_path}")
					with open(artifacts.archive_path, "wb") as file:
						received = self.receive(response, total, file.write)
		except httpx.HTTPError as e:
			self.abort_download(handle, artifacts)
			raise AcquisitionError(f"Failed to download system image from: {image.url} ({e})")
		except OSError as e:
			self.abort_download(handle, artifacts)
			raise AcquisitionError(f"Failed to write {artifacts.archive_path}: {e}")
		except (AcquisitionError, FlashCancelled):
			self.abort_download(handle, artifacts)
			raise

		logger.info(f"Download completed: {received} bytes")

		if handle is None:
			return

		if not self.cache.finish_write(handle):
			artifacts.archive_path = None
			raise AcquisitionError(f"Failed to write DFU cache file {handle.path}")

		# without a recorded fingerprint the payload is only good for this run
		if self.cache.commit(image.filename):
			artifacts.retained_path = handle.path

	def receive(self, response: httpx.Response, total: int, write) -> int:
		received = 0
		last_progress = DOWNLOAD_START
		for chunk in response.iter_bytes(chunk_size=self.config.download_chunk_size):
			check_cancel(self.cancel)
			write(chunk)
			received += len(chunk)

			if total > 0:
				progress = DOWNLOAD_START + received * (DOWNLOAD_END - DOWNLOAD_START) // total
				if progress > last_progress:
					last_progress = progress
					self.reporter.download(received, total)
					self.reporter.update(progress, f"Downloading: {to_mib(received)} MB / {to_mib(total)} MB")

		return received

	def write_cache(self, handle, chunk: bytes):
		if not self.cache.append(handle, chunk):
			raise AcquisitionError(f"Failed to write DFU cache file {handle.path}")

	def abort_download(self, handle, artifacts: TemporaryArtifacts):
		self.cache.discard(handle)
		artifacts.remove_archive()

	def close(self):
		if self.client is not None:
			self.client.close()
			self.client = None
