"""Typed per-role characteristic results extracted during the analyzing stage."""

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class ColorProfile(BaseModel):
    """Colour statistics shared by every role."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(ge=1)
    height: int = Field(ge=1)
    mean_rgb: tuple[int, int, int]
    brightness: float = Field(ge=0.0, le=1.0)

    @property
    def orientation(self) -> str:
        if self.width == self.height:
            return "square"
        return "portrait" if self.height > self.width else "landscape"


class FaceCharacteristics(ColorProfile):
    role: Literal["face"] = "face"
    lighting: str


class ProductCharacteristics(ColorProfile):
    role: Literal["product"] = "product"
    primary_color: str


class DetailCharacteristics(ColorProfile):
    role: Literal["detail"] = "detail"
    contrast: float = Field(ge=0.0, le=1.0)


ImageCharacteristics = Union[FaceCharacteristics, ProductCharacteristics, DetailCharacteristics]
