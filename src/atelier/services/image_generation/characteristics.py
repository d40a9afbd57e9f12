"""Placeholder characteristic extraction, one strategy per image role.

Only cheap colour statistics are computed; real vision analysis is out of
scope. Results feed prompt construction.
"""

from typing import Protocol

from PIL import Image, ImageStat

from atelier.models.characteristics import (
    ColorProfile,
    DetailCharacteristics,
    FaceCharacteristics,
    ImageCharacteristics,
    ProductCharacteristics,
)
from atelier.models.generation_job import ImageRole

NAMED_COLORS: tuple[tuple[str, tuple[int, int, int]], ...] = (
    ("black", (20, 20, 20)),
    ("white", (240, 240, 240)),
    ("gray", (128, 128, 128)),
    ("red", (200, 30, 30)),
    ("orange", (240, 140, 30)),
    ("yellow", (240, 220, 50)),
    ("green", (40, 150, 60)),
    ("blue", (40, 70, 200)),
    ("navy", (20, 30, 90)),
    ("purple", (120, 50, 160)),
    ("pink", (240, 150, 190)),
    ("brown", (120, 80, 40)),
    ("beige", (220, 200, 160)),
)


def nearest_color_name(rgb: tuple[int, int, int]) -> str:
    def distance(candidate: tuple[int, int, int]) -> int:
        return sum((a - b) ** 2 for a, b in zip(rgb, candidate))

    return min(NAMED_COLORS, key=lambda named: distance(named[1]))[0]


def color_profile(image: Image.Image) -> ColorProfile:
    stat = ImageStat.Stat(image.convert("RGB"))
    mean_rgb = tuple(int(round(channel)) for channel in stat.mean[:3])
    luminance = ImageStat.Stat(image.convert("L")).mean[0]
    return ColorProfile(
        width=image.width,
        height=image.height,
        mean_rgb=mean_rgb,
        brightness=round(luminance / 255, 4),
    )


class CharacteristicStrategy(Protocol):
    def extract(self, image: Image.Image) -> ImageCharacteristics: ...


class FaceStrategy:
    def extract(self, image: Image.Image) -> FaceCharacteristics:
        profile = color_profile(image)
        if profile.brightness < 0.35:
            lighting = "low-key"
        elif profile.brightness > 0.7:
            lighting = "high-key"
        else:
            lighting = "balanced"
        return FaceCharacteristics(**profile.model_dump(), lighting=lighting)


class ProductStrategy:
    def extract(self, image: Image.Image) -> ProductCharacteristics:
        profile = color_profile(image)
        return ProductCharacteristics(
            **profile.model_dump(), primary_color=nearest_color_name(profile.mean_rgb)
        )


class DetailStrategy:
    def extract(self, image: Image.Image) -> DetailCharacteristics:
        profile = color_profile(image)
        stddev = ImageStat.Stat(image.convert("L")).stddev[0]
        # Max stddev of an 8-bit channel is 127.5
        contrast = round(min(stddev / 127.5, 1.0), 4)
        return DetailCharacteristics(**profile.model_dump(), contrast=contrast)


STRATEGIES: dict[ImageRole, CharacteristicStrategy] = {
    ImageRole.FACE: FaceStrategy(),
    ImageRole.PRODUCT: ProductStrategy(),
    ImageRole.DETAIL: DetailStrategy(),
}


def extract_characteristics(role: ImageRole, image: Image.Image) -> ImageCharacteristics:
    return STRATEGIES[role].extract(image)
