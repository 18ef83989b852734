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

import os
import platform
import tempfile
import dataclasses
from dataclasses import dataclass, field
import yaml
from gemflash.errors import ConfigError
from gemflash.utils import parse_usb_ids
import logging

logger = logging.getLogger("gemflash")

# TI J7 ROM code and SPL both enumerate with these IDs
DEFAULT_USB_IDS = "0451:6165"

RELEASE = "v2025.12"
DEFAULT_VARIANT = "minimal"
FILENAME_TEMPLATE = "gemstone-{variant}-{release}-{distro}-{image_type}-{board}.img.xz"
URL_TEMPLATE = "https://packages.t3gemstone.org/images/{distro}/{image_type}/{board}/{filename}"

IMAGE_ALT_NAME = "rawemmc"
CACHE_FILE_NAME = "lastdfudownload.cache"
CACHE_STORE_NAME = "cache.yaml"
WORK_DIR_NAME = "gem-imager"


@dataclass(frozen=True)
class StageDescriptor:
	source_file: str
	alt_name: str
	reset_after: bool = True


DEFAULT_STAGES = (
	StageDescriptor("tiboot3.bin", "bootloader"),
	StageDescriptor("tispl.bin", "tispl.bin"),
	StageDescriptor("u-boot.img", "u-boot.img"),
)


def default_cache_dir() -> str:
	if platform.system() == "Windows":
		base = os.getenv("LOCALAPPDATA") or os.path.join(os.path.expanduser("~"), "AppData", "Local")
	else:
		base = os.getenv("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
	return os.path.join(base, "gemflash")


def default_work_dir() -> str:
	return os.path.join(tempfile.gettempdir(), WORK_DIR_NAME)


@dataclass
class FlashConfig:
	usb_vid: int = 0x0451
	usb_pid: int = 0x6165
	firmware_dir: str = "."
	stages: tuple = DEFAULT_STAGES
	image_alt_name: str = IMAGE_ALT_NAME

	release: str = RELEASE
	default_variant: str = DEFAULT_VARIANT
	filename_template: str = FILENAME_TEMPLATE
	url_template: str = URL_TEMPLATE

	# seconds
	reconnect_delay: float = 5.0
	image_mode_delay: float = 10.0
	settle_delay: float = 1.0
	poll_interval: float = 0.5
	find_retries: int = 15
	find_interval: float = 1.0
	usb_timeout: int = 60000
	http_timeout: float = 30.0

	download_chunk_size: int = 64 * 1024
	cache_enabled: bool = True
	cache_dir: str = field(default_factory=default_cache_dir)
	work_dir: str = field(default_factory=default_work_dir)

	@property
	def cache_file(self) -> str:
		return os.path.join(self.cache_dir, CACHE_FILE_NAME)

	@property
	def cache_store(self) -> str:
		return os.path.join(self.cache_dir, CACHE_STORE_NAME)


def parse_stages(stages) -> tuple:
	if not isinstance(stages, list) or stages == []:
		raise ConfigError("'stages' should be a non-empty list")

	parsed = []
	for stage in stages:
		if not isinstance(stage, dict) or "file" not in stage or "alt" not in stage:
			raise ConfigError(f"invalid stage {stage}, expected {{file: ..., alt: ...}}")
		parsed.append(StageDescriptor(str(stage["file"]), str(stage["alt"]), bool(stage.get("reset", True))))

	return tuple(parsed)


def apply_overrides(config: FlashConfig, overrides: dict) -> FlashConfig:
	"""
	Overrides use the yaml spelling of field names, i.e. "reconnect-delay"
	for reconnect_delay. "usb-ids" and "stages" get special parsing.
	"""
	fields = {f.name: f for f in dataclasses.fields(FlashConfig)}
	changes = {}

	for key, value in overrides.items():
		if key == "usb-ids":
			try:
				(changes["usb_vid"], changes["usb_pid"]) = parse_usb_ids(str(value))
			except ValueError as e:
				raise ConfigError(str(e))
			continue

		if key == "stages":
			changes["stages"] = parse_stages(value)
			continue

		name = key.replace("-", "_")
		if name not in fields or name in ["usb_vid", "usb_pid"]:
			raise ConfigError(f"unknown config key '{key}'")

		expected = type(getattr(config, name))
		if expected is float and isinstance(value, int) and not isinstance(value, bool):
			value = float(value)
		if not isinstance(value, expected) or (expected is not bool and isinstance(value, bool)):
			raise ConfigError(f"config key '{key}' should be of type {expected.__name__}")

		changes[name] = value

	return dataclasses.replace(config, **changes)


def read_config(path: str) -> dict:
	with open(path, "r") as file:
		overrides = yaml.safe_load(file)

	if overrides is None:
		return {}

	if not isinstance(overrides, dict):
		raise ConfigError(f"config file {path} did not evaluate to a dict")

	return overrides


def init_config(args) -> FlashConfig:
	config = FlashConfig()

	if getattr(args, "config", None):
		config = apply_overrides(config, read_config(args.config))

	cli_overrides = {}
	if getattr(args, "firmware_dir", None):
		cli_overrides["firmware-dir"] = args.firmware_dir
	if getattr(args, "port", None):
		cli_overrides["usb-ids"] = args.port
	if getattr(args, "no_cache", False):
		cli_overrides["cache-enabled"] = False

	config = apply_overrides(config, cli_overrides)
	logger.debug(f"flash config: {config}")
	return config
