import usb.core
import platform
import weakref
import gc

class GemflashUSBContext():
	"""
	Keeps track of the USB device objects returned by usb.core.find().
	Every rescan drops all references to the previous ones, so that stale
	devices from before a reset are never handed out again.

	Only weak references are returned. Some versions of libusb for
	Windows assign the same bus number to two root hubs after a
	reenumeration on an existing context; a hard rescan destroys the
	context so that a fresh one gets created.
	"""

	devices = []

	def hard_rescan(backend=None):
		__class__.devices.clear()
		gc.collect()
		__class__.devices = list(usb.core.find(find_all=True, backend=backend))

	def rescan(backend=None):
		__class__.devices.clear()
		__class__.devices = list(usb.core.find(find_all=True, backend=backend))
		if platform.system() == "Windows":
			__class__.check_for_libusb_bug(backend)

	def check_for_libusb_bug(backend=None, retry=1):
		root_hubs = [dev for dev in __class__.devices if dev.parent is None]
		bus_numbers = set([dev.bus for dev in root_hubs])
		if len(root_hubs) > len(bus_numbers):
			if retry == 0:
				raise ValueError("libusb bug detected! Two root hubs were assigned the same bus number! Please update libusb to a newer version")

			__class__.hard_rescan(backend)
			__class__.check_for_libusb_bug(backend, retry=0)

	def find(**args):
		for dev in __class__.devices:
			tests = (hasattr(dev, key) and val == getattr(dev, key) for key, val in args.items())
			if all(tests):
				yield weakref.proxy(dev)

	def release():
		__class__.devices.clear()
