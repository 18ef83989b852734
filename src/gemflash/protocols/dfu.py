# This file is part of Gemflash, derived from Snagboot
# Copyright (C) 2023 Bootlin
#
# Written by Romain Gantois <romain.gantois@bootlin.com> in 2023.
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; either version 2
# of the License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston, MA  02110-1301, USA.

import usb.core
import usb.util
import time
import logging
logger = logging.getLogger("gemflash")
from gemflash.utils import file_chunks

DFU_DETACH = 0
DFU_DNLOAD = 1
DFU_GETSTATUS = 3
DFU_CLRSTATUS = 4
DFU_ABORT = 6

DEFAULT_TRANSFER_SIZE = 1024
# application specific class, DFU subclass
DFU_INTERFACE_CLASS = (0xFE, 0x01)
DETACH_TIMEOUT = 1000

class DFUError(Exception):
	pass

def search_altsetting(dev: usb.core.Device, alt_name: str):
	"""
	Look for the DFU interface altsetting whose iInterface string is
	alt_name. Returns the matching usb.core.Interface or None.
	"""
	cfg = dev.get_active_configuration()
	# note that we're really iterating over multiple altsettings of
	# the same interface here
	for intf in cfg.interfaces():
		if intf.iInterface == 0:
			continue
		desc = usb.util.get_string(dev, intf.iInterface)
		if desc == alt_name:
			return intf
	return None

def list_altsettings(dev: usb.core.Device) -> list:
	altsettings = []
	cfg = dev.get_active_configuration()
	for intf in cfg.interfaces():
		if (intf.bInterfaceClass, intf.bInterfaceSubClass) != DFU_INTERFACE_CLASS:
			continue
		name = usb.util.get_string(dev, intf.iInterface) if intf.iInterface else None
		altsettings.append((intf.bInterfaceNumber, intf.bAlternateSetting, name))
	return altsettings

class DFU():
	DESC_TYPE_DFU = 0x21

	state_codes = {
		"appIDLE": 0,
		"appDETACH": 1,
		"dfuIDLE": 2,
		"dfuDNLOAD-SYNC": 3,
		"dfuDNBUSY": 4,
		"dfuDNLOAD-IDLE": 5,
		"dfuMANIFEST-SYNC": 6,
		"dfuMANIFEST": 7,
		"dfuMANIFEST-WAIT-RESET": 8,
		"dfuUPLOAD-IDLE": 9,
		"dfuERROR": 10
	}

	status_codes = {
		0x00: "OK",
		0x01: "errTARGET",
		0x02: "errFILE",
		0x03: "errWRITE",
		0x04: "errERASE",
		0x05: "errCHECK_ERASED",
		0x06: "errPROG",
		0x07: "errVERIFY",
		0x08: "errADDRESS",
		0x09: "errNOTDONE",
		0x0A: "errFIRMWARE",
		0x0B: "errVENDOR",
		0x0C: "errUSBR",
		0x0D: "errPOR",
		0x0E: "errUNKNOWN",
		0x0F: "errSTALLEDPKT"
	}

	def __init__(self, dev: usb.core.Device, intf):
		self.dev = dev
		self.intf = intf
		self.intf_num = intf.bInterfaceNumber
		self.transfer_size = DFU.get_transfer_size(intf)

	def get_transfer_size(intf) -> int:
		# wTransferSize lives in the DFU functional descriptor
		desc = intf.extra_descriptors
		if len(desc) >= 7 and desc[1] == DFU.DESC_TYPE_DFU:
			size = desc[6] * 0x100 + desc[5]
			if size > 0:
				logger.info(f"Found DFU Functional descriptor: wTransferSize = {size}")
				return size
		return DEFAULT_TRANSFER_SIZE

	def get_status(self) -> tuple:
		# status = bStatus bwPollTimeout(3 bytes) bState iString
		status = self.dev.ctrl_transfer(0xa1, DFU_GETSTATUS, wValue=0, wIndex=self.intf_num, data_or_wLength=6)
		state = status[4]
		timeout = int.from_bytes(bytes(status[1:4]), "little")
		logger.debug(f"DFU state: {state} DFU status: {DFU.status_codes.get(status[0], status[0])}")
		return (status[0], state, timeout)

	def clear_status(self):
		self.dev.ctrl_transfer(0x21, DFU_CLRSTATUS, wValue=0, wIndex=self.intf_num, data_or_wLength=None)

	def abort(self):
		self.dev.ctrl_transfer(0x21, DFU_ABORT, wValue=0, wIndex=self.intf_num, data_or_wLength=None)

	def detach(self, timeout: int = DETACH_TIMEOUT):
		logger.info("Sending DFU_DETACH...")
		self.dev.ctrl_transfer(0x21, DFU_DETACH, wValue=timeout, wIndex=self.intf_num, data_or_wLength=None)

	def set_altsetting(self):
		self.dev.set_interface_altsetting(interface=self.intf_num, alternate_setting=self.intf.bAlternateSetting)

	def prepare(self):
		"""
		Bring the interface back to dfuIDLE: clear a pending error and
		abort a transfer left over from a previous session.
		"""
		(status, state, timeout) = self.get_status()
		logger.debug(f"DFU state({state}) status({status})")

		if state == DFU.state_codes["dfuERROR"]:
			logger.info("Clearing error status")
			self.clear_status()
			(status, state, timeout) = self.get_status()

		if state in [DFU.state_codes["dfuDNLOAD-IDLE"], DFU.state_codes["dfuUPLOAD-IDLE"]]:
			logger.info("Aborting previous incomplete transfer")
			self.abort()
			(status, state, timeout) = self.get_status()

		if state != DFU.state_codes["dfuIDLE"]:
			raise DFUError(f"Incompatible state {state} detected")

	def wait_status(self, timeout: int) -> tuple:
		# bwPollTimeout is the minimum time to wait before the next GETSTATUS
		if timeout > 0:
			time.sleep(timeout / 1000)
		(status, state, timeout) = self.get_status()
		if status != 0 or state == DFU.state_codes["dfuERROR"]:
			raise DFUError(f"Device reported {DFU.status_codes.get(status, status)} in state {state}")
		return (state, timeout)

	def download(self, file, size: int, progress=None) -> int:
		"""
		Send a file in wTransferSize chunks. Returns once every block has
		been acknowledged, the zero-length block that starts manifestation
		is sent separately by manifest().
		"""
		block_index = 0
		bytes_written = 0
		timeout = 0

		for chunk in file_chunks(file, self.transfer_size):
			bytes_written += self.dev.ctrl_transfer(0x21, DFU_DNLOAD, wValue=block_index & 0xffff, wIndex=self.intf_num, data_or_wLength=chunk)
			(state, timeout) = self.wait_status(timeout)
			while state != DFU.state_codes["dfuDNLOAD-IDLE"]:
				(state, timeout) = self.wait_status(timeout)
			block_index += 1
			if progress is not None and size > 0:
				progress(bytes_written / size)

		self.block_index = block_index
		self.poll_timeout = timeout
		return bytes_written

	def manifest(self):
		# send zero-length download command to leave DFU mode and manifest
		# firmware
		self.dev.ctrl_transfer(0x21, DFU_DNLOAD, wValue=self.block_index & 0xffff, wIndex=self.intf_num, data_or_wLength=None)
		(state, timeout) = self.wait_status(self.poll_timeout)
		while state != DFU.state_codes["dfuIDLE"]:
			if state == DFU.state_codes["dfuMANIFEST-WAIT-RESET"]:
				break
			(state, timeout) = self.wait_status(timeout)
		logger.info("Done manifesting firmware")
