#!/usr/bin/env python3
"""Color and sample model descriptions and the mosaic compatibility check

Granules of one coverage must share a color model. Component (direct color)
models must match exactly. Indexed (palette) models with different palettes
can still be mosaicked once expanded to RGB(A).
"""
from __future__ import annotations

import dataclasses
import enum
import json
import typing


class Transparency(enum.StrEnum):
    """Switch for the transparency mode of a color model"""

    OPAQUE = "opaque"
    BITMASK = "bitmask"
    TRANSLUCENT = "translucent"


class ColorModelCheck(enum.StrEnum):
    """Outcome of comparing a granule color model with the coverage's"""

    COMPATIBLE = "compatible"
    EXPAND_TO_RGB = "expand_to_rgb"
    INCOMPATIBLE = "incompatible"


@dataclasses.dataclass(frozen=True)
class ComponentColorModelInfo:
    """Convenience wrapper for a direct color model, one sample per component"""

    num_components: int
    has_alpha: bool
    color_space: str
    transparency: Transparency
    transfer_type: str

    kind: typing.ClassVar[str] = "component"


@dataclasses.dataclass(frozen=True)
class IndexColorModelInfo:
    """Convenience wrapper for a palette color model

    The palette holds one (r, g, b, a) tuple per entry.
    """

    map_size: int
    palette: tuple[tuple[int, int, int, int], ...]
    num_components: int
    has_alpha: bool
    transparency: Transparency
    transfer_type: str
    color_space: str = "sRGB"
    transparent_pixel: int = -1

    kind: typing.ClassVar[str] = "index"

    def __post_init__(self):
        if len(self.palette) != self.map_size:
            raise ValueError(f"Palette has {len(self.palette)} entries, map size is {self.map_size}")

    @staticmethod
    def from_entries(entries, transfer_type: str = "Byte") -> "IndexColorModelInfo":
        """Build from palette entries of 3 or 4 values, deriving alpha and transparency"""
        palette = tuple(tuple(entry) + (255,) * (4 - len(entry)) for entry in entries)
        alphas = {entry[3] for entry in palette}
        transparent = [i for i, entry in enumerate(palette) if entry[3] == 0]
        if alphas <= {255}:
            transparency = Transparency.OPAQUE
        elif alphas <= {0, 255}:
            transparency = Transparency.BITMASK
        else:
            transparency = Transparency.TRANSLUCENT
        has_alpha = transparency != Transparency.OPAQUE
        return IndexColorModelInfo(
            map_size=len(palette),
            palette=palette,
            num_components=4 if has_alpha else 3,
            has_alpha=has_alpha,
            transparency=transparency,
            transfer_type=transfer_type,
            transparent_pixel=transparent[0] if len(transparent) == 1 else -1,
        )


ColorModelInfo = ComponentColorModelInfo | IndexColorModelInfo


@dataclasses.dataclass(frozen=True)
class SampleModelInfo:
    """Convenience wrapper for the pixel layout of a raster"""

    data_type: str
    num_bands: int
    block_width: int = 0
    block_height: int = 0


def palette_components(model: IndexColorModelInfo) -> tuple[tuple[int, ...], ...]:
    """Copy palette channels into separate per-channel buffers

    Alpha is included only when the model carries an alpha component.
    """
    channels = 4 if model.num_components == 4 else 3
    return tuple(tuple(entry[c] for entry in model.palette) for c in range(channels))


def check_color_model(reference: ColorModelInfo, actual: ColorModelInfo) -> ColorModelCheck:
    """Compare a granule color model against the coverage reference model"""
    if type(reference) is not type(actual):
        return ColorModelCheck.INCOMPATIBLE

    if isinstance(reference, ComponentColorModelInfo):
        return ColorModelCheck.COMPATIBLE if reference == actual else ColorModelCheck.INCOMPATIBLE

    if (
        reference.num_components != actual.num_components
        or reference.has_alpha != actual.has_alpha
        or reference.color_space != actual.color_space
        or reference.transfer_type != actual.transfer_type
    ):
        return ColorModelCheck.INCOMPATIBLE

    if (
        reference.map_size != actual.map_size
        or reference.transparency != actual.transparency
        or reference.transparent_pixel != actual.transparent_pixel
    ):
        return ColorModelCheck.EXPAND_TO_RGB

    if palette_components(reference) != palette_components(actual):
        return ColorModelCheck.EXPAND_TO_RGB
    return ColorModelCheck.COMPATIBLE


def color_model_to_json(model: ColorModelInfo | None) -> str:
    if model is None:
        return ""
    data = dataclasses.asdict(model)
    data["kind"] = model.kind
    return json.dumps(data, separators=(",", ":"))


def color_model_from_json(text: str | None) -> ColorModelInfo | None:
    if not text:
        return None
    data = json.loads(text)
    kind = data.pop("kind")
    data["transparency"] = Transparency(data["transparency"])
    if kind == IndexColorModelInfo.kind:
        data["palette"] = tuple(tuple(entry) for entry in data["palette"])
        return IndexColorModelInfo(**data)
    if kind == ComponentColorModelInfo.kind:
        return ComponentColorModelInfo(**data)
    raise ValueError(f"Unknown color model kind: {kind}")


def sample_model_to_json(model: SampleModelInfo | None) -> str:
    if model is None:
        return ""
    return json.dumps(dataclasses.asdict(model), separators=(",", ":"))


def sample_model_from_json(text: str | None) -> SampleModelInfo | None:
    if not text:
        return None
    return SampleModelInfo(**json.loads(text))
