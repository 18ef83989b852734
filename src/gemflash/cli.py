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

import argparse
from gemflash import __version__
from gemflash.config import init_config
from gemflash.errors import ConfigError
from gemflash.events import LogEventSink
from gemflash.image import ImageRequest
from gemflash.session import FlashSession
from gemflash.transfer import list_devices
from gemflash.utils import cli_error
import logging
import sys

def setup_logging(args):
	logger = logging.getLogger("gemflash")
	logger.setLevel(logging.DEBUG)
	log_formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

	stdout_handler = logging.StreamHandler(sys.stdout)
	stdout_handler.setLevel(logging.INFO)
	stdout_handler.setFormatter(log_formatter)
	logger.addHandler(stdout_handler)

	if args.loglevel != "silent":
		log_handler = logging.FileHandler(args.logfile, encoding="utf-8")
		log_handler.setFormatter(log_formatter)
		if args.loglevel == "debug":
			log_handler.setLevel(logging.DEBUG)
		elif args.loglevel == "info":
			log_handler.setLevel(logging.INFO)
		logger.addHandler(log_handler)

	return logger

def cli():
	example = '''Examples:
	# bootloader stages only
	gemflash -D binaries/
	# bootloader stages, then the debian minimal image to the rawemmc altsetting
	gemflash -D binaries/ -b j7 -t minimal -d debian
	# image type with an explicit variant
	gemflash -D binaries/ -b j7 -t kiosk/full -d debian
	'''
	parser = argparse.ArgumentParser(epilog=example, formatter_class=argparse.RawDescriptionHelpFormatter)
	common = parser.add_argument_group("Common")
	common.add_argument("--loglevel", help="set loglevel", choices=["silent","info","debug"], default="silent")
	common.add_argument("--logfile", help="set logfile", default="board_flashing.log")
	common.add_argument("--version", help="show version", action="store_true")
	common.add_argument("-c", "--config", help="yaml file overriding default settings")
	common.add_argument("-p", "--port", help="USB IDs of the DFU device", metavar="vid:pid")
	common.add_argument("-D", "--firmware-dir", help="directory holding the bootloader files")
	common.add_argument("--list-devices", help="list DFU interfaces of connected devices", action="store_true")
	image = parser.add_argument_group("System image")
	image.add_argument("-b", "--board", help="board name", default="")
	image.add_argument("-t", "--image-type", help="image type, optionally followed by /variant", metavar="type[/variant]", default="")
	image.add_argument("-d", "--distro", help="distribution", default="")
	image.add_argument("-V", "--variant", help="image variant", default="")
	image.add_argument("--no-cache", help="don't keep the downloaded image for the next run", action="store_true")

	args = parser.parse_args()

	# show version
	if args.version:
		print(f"Gemflash v{__version__}")
		sys.exit(0)

	logger = setup_logging(args)

	try:
		config = init_config(args)
	except (ConfigError, OSError) as e:
		cli_error(str(e))

	if args.list_devices:
		devices = list_devices(config.usb_vid, config.usb_pid)
		if devices == []:
			print("No DFU devices found")
		for line in devices:
			print(line)
		sys.exit(0)

	request = ImageRequest(args.board, args.image_type, args.distro, args.variant)
	session = FlashSession(config, LogEventSink())
	session.start(request)

	try:
		outcome = session.join()
	except KeyboardInterrupt:
		logger.info("Interrupted, waiting for the current step to stop...")
		session.cancel()
		outcome = session.join()

	if outcome is None or not outcome.success:
		sys.exit(-1)

	if args.loglevel != "silent":
		logger.info(f"Logs were appended to {args.logfile}")

if __name__ == "__main__":
	cli()
