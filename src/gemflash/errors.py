class GemflashError(Exception):
	"""
	Base class for every failure that ends a flashing run. The message
	is what gets shown to the operator.
	"""
	pass

class ConfigError(GemflashError):
	pass

class AcquisitionError(GemflashError):
	pass

class CorruptArchive(AcquisitionError):
	pass

class StageFileMissing(GemflashError):
	def __init__(self, path: str):
		self.path = path
		super().__init__(f"Bootloader file not found: {path}")

class DeviceNotFound(GemflashError):
	pass

class TransferError(GemflashError):
	pass

class FlashCancelled(GemflashError):
	def __init__(self):
		super().__init__("Flashing cancelled")
