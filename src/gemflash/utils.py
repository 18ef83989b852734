import sys
import re
import os
import logging
logger = logging.getLogger("gemflash")

def cli_error(error: str):
	logger.info(f"CLI error: {error}")
	sys.exit(-1)

def parse_usb_ids(usb_id: str) -> tuple:
	expr = re.compile("([0-9a-fA-F]{1,4}):([0-9a-fA-F]{1,4})$")
	m = expr.match(usb_id)
	if m is None:
		raise ValueError(f"invalid USB ID {usb_id}")
	vid = int(m.group(1), base=16)
	pid = int(m.group(2), base=16)
	return (vid,pid)

def prettify_usb_ids(vid: int, pid: int) -> str:
	return f"{vid:04x}:{pid:04x}"

def file_chunks(file, chunk_size: int):
	# read an open binary file by chunks of chunk_size bytes
	while True:
		chunk = file.read(chunk_size)
		if not chunk:
			return
		yield chunk

def remove_file(path: str) -> bool:
	"""
	Delete a file if it exists. Returns True if something was removed,
	calling this twice on the same path is harmless.
	"""
	if not path:
		return False
	try:
		os.remove(path)
	except FileNotFoundError:
		return False
	except OSError as e:
		logger.warning(f"Could not remove {path}: {e}")
		return False
	logger.debug(f"Removed {path}")
	return True

def file_is_usable(path: str) -> bool:
	# exists, is readable and is not empty
	return os.path.isfile(path) and os.access(path, os.R_OK) and os.path.getsize(path) > 0

def to_mib(size: int) -> int:
	return size // 1024 // 1024
