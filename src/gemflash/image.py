from dataclasses import dataclass
from gemflash.config import FlashConfig

@dataclass(frozen=True)
class ImageRequest:
	board: str = ""
	image_type: str = ""
	distro: str = ""
	variant: str = ""

	def is_complete(self) -> bool:
		# without all three there is no image to fetch, only bootloaders get flashed
		return bool(self.board) and bool(self.image_type) and bool(self.distro)

@dataclass(frozen=True)
class ResolvedImage:
	filename: str
	url: str
	image_type: str
	variant: str

	@property
	def extracted_name(self) -> str:
		if self.filename.endswith(".img.xz"):
			return self.filename[:-len(".img.xz")] + ".img"
		if self.filename.endswith(".xz"):
			return self.filename[:-len(".xz")]
		return self.filename + ".img"

def split_image_type(image_type: str, variant: str, default_variant: str) -> tuple:
	"""
	"kiosk/full" selects image type "kiosk" and variant "full", overriding
	whatever variant was passed separately.
	"""
	if "/" in image_type:
		(image_type, variant) = image_type.split("/")[:2]

	if variant == "":
		variant = default_variant

	return (image_type, variant)

def resolve_image(request: ImageRequest, config: FlashConfig) -> ResolvedImage:
	(image_type, variant) = split_image_type(request.image_type, request.variant, config.default_variant)

	filename = config.filename_template.format(
		variant=variant,
		release=config.release,
		distro=request.distro,
		image_type=image_type,
		board=request.board,
	)
	url = config.url_template.format(
		distro=request.distro,
		image_type=image_type,
		board=request.board,
		filename=filename,
	)

	return ResolvedImage(filename, url, image_type, variant)
