"""Reference image compositor for single-image generation providers.

Stacks the face, product and detail references into one fixed 752x1392
canvas (face 25%, product 50%, detail 25% of the height). Each image is
scaled to fit inside its band without cropping and padded with white.
Output is a baseline JPEG at quality 95 with no metadata, so identical
inputs always produce identical bytes.
"""

import base64
import io
from typing import NamedTuple, Optional, Sequence

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from atelier.models.generation_job import ImageRole, ReferenceImage
from atelier.services.exceptions import CompositionError

logger = structlog.get_logger(__name__)

CANVAS_WIDTH = 752
CANVAS_HEIGHT = 1392
BACKGROUND = (255, 255, 255)
JPEG_QUALITY = 95

# Fixed top-to-bottom band order and height shares
BAND_SHARES: tuple[tuple[ImageRole, float], ...] = (
    (ImageRole.FACE, 0.25),
    (ImageRole.PRODUCT, 0.50),
    (ImageRole.DETAIL, 0.25),
)

REQUIRED_ROLES = frozenset({ImageRole.PRODUCT})


class Band(NamedTuple):
    role: ImageRole
    top: int
    height: int


def band_layout() -> list[Band]:
    """Return the fixed band layout; the last band absorbs rounding remainder."""
    bands = []
    top = 0
    for index, (role, share) in enumerate(BAND_SHARES):
        if index == len(BAND_SHARES) - 1:
            height = CANVAS_HEIGHT - top
        else:
            height = int(CANVAS_HEIGHT * share)
        bands.append(Band(role=role, top=top, height=height))
        top += height
    return bands


def fit_inside(size: tuple[int, int], box: tuple[int, int]) -> tuple[int, int]:
    """Largest size with the same aspect ratio as ``size`` that fits in ``box``."""
    width, height = size
    box_width, box_height = box
    scale = min(box_width / width, box_height / height)
    fitted_width = min(box_width, max(1, round(width * scale)))
    fitted_height = min(box_height, max(1, round(height * scale)))
    return fitted_width, fitted_height


def decode_image(data: bytes) -> Image.Image:
    """Decode bytes into an RGB image flattened onto the background colour.

    Raises:
        ValueError: If the bytes are empty or not a readable image
    """
    if not data:
        raise ValueError("Image payload is empty")
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            oriented = ImageOps.exif_transpose(source)
            rgba = oriented.convert("RGBA")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"Unreadable image data: {e}") from e

    flattened = Image.new("RGBA", rgba.size, BACKGROUND + (255,))
    flattened.alpha_composite(rgba)
    return flattened.convert("RGB")


class ImageCompositor:
    """Builds the fixed-layout composite canvas from role-tagged references."""

    def __init__(self, jpeg_quality: int = JPEG_QUALITY):
        self.jpeg_quality = jpeg_quality
        self.bands = band_layout()

    def compose(self, images: Sequence[ReferenceImage]) -> bytes:
        """Composite reference images into one canvas.

        Args:
            images: Ordered references; the first ``face`` and ``product``
                image are used, every ``detail`` image shares the detail band

        Returns:
            JPEG bytes of the 752x1392 canvas

        Raises:
            CompositionError: If the product image is missing or unreadable
        """
        decoded = self._decode_by_role(images)

        canvas = Image.new("RGB", (CANVAS_WIDTH, CANVAS_HEIGHT), BACKGROUND)
        for band in self.bands:
            role_images = decoded.get(band.role, [])
            if role_images:
                self._paste_cells(canvas, band, role_images)

        buffer = io.BytesIO()
        canvas.save(
            buffer,
            format="JPEG",
            quality=self.jpeg_quality,
            subsampling=0,
            optimize=False,
            progressive=False,
        )
        return buffer.getvalue()

    def _decode_by_role(self, images: Sequence[ReferenceImage]) -> dict[ImageRole, list[Image.Image]]:
        decoded: dict[ImageRole, list[Image.Image]] = {}
        for image in images:
            if image.role != ImageRole.DETAIL and image.role in decoded:
                logger.warning(
                    "compositor.duplicate_role_ignored", role=image.role.value, name=image.name
                )
                continue
            try:
                picture = decode_image(image.data)
            except ValueError as e:
                if image.role in REQUIRED_ROLES:
                    raise CompositionError(
                        f"Required {image.role.value} image '{image.name}' is unreadable: {e}"
                    ) from e
                # Optional role degrades to a blank band
                logger.warning(
                    "compositor.optional_role_unreadable",
                    role=image.role.value,
                    name=image.name,
                    error_message=str(e),
                )
                continue
            decoded.setdefault(image.role, []).append(picture)

        for role in REQUIRED_ROLES:
            if role not in decoded:
                raise CompositionError(f"Required {role.value} image was not supplied")
        return decoded

    def _paste_cells(self, canvas: Image.Image, band: Band, pictures: list[Image.Image]) -> None:
        cell_width = CANVAS_WIDTH // len(pictures)
        left = 0
        for index, picture in enumerate(pictures):
            width = CANVAS_WIDTH - left if index == len(pictures) - 1 else cell_width
            fitted = fit_inside(picture.size, (width, band.height))
            resized = picture.resize(fitted, resample=Image.Resampling.LANCZOS)
            offset = (
                left + (width - fitted[0]) // 2,
                band.top + (band.height - fitted[1]) // 2,
            )
            canvas.paste(resized, offset)
            left += width


def to_base64(payload: Optional[bytes]) -> str:
    if not payload:
        raise ValueError("Composite payload is empty")
    return base64.b64encode(payload).decode("ascii")
