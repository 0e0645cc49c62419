import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence, Tuple

import numpy as np

from facekiosk.config import ANCHOR_MIN_SIZES, ANCHOR_STRIDES, DETECTION_INPUT_SIZE


class AnchorConfigError(ValueError):
    """Raised for an inconsistent resolution / stride / min-size configuration."""


@dataclass(frozen=True)
class AnchorConfig:
    """Model input resolution and the per-level anchor layout (RetinaFace priors)."""
    input_width: int = DETECTION_INPUT_SIZE[0]
    input_height: int = DETECTION_INPUT_SIZE[1]
    strides: Tuple[int, ...] = ANCHOR_STRIDES
    min_sizes: Tuple[Tuple[int, ...], ...] = ANCHOR_MIN_SIZES

    def __post_init__(self):
        # Normalize lists into tuples so the config stays hashable
        object.__setattr__(self, "strides", tuple(int(s) for s in self.strides))
        object.__setattr__(self, "min_sizes", tuple(tuple(int(m) for m in level) for level in self.min_sizes))
        _validate(self.input_width, self.input_height, self.strides, self.min_sizes)

    @property
    def count(self) -> int:
        return anchor_count(self.input_width, self.input_height, self.strides, self.min_sizes)


def _validate(width: int, height: int, strides: Sequence[int], min_sizes: Sequence[Sequence[int]]) -> None:
    if width <= 0 or height <= 0:
        raise AnchorConfigError(f"Input resolution must be positive, got {width}x{height}")
    if len(strides) == 0:
        raise AnchorConfigError("At least one stride level is required")
    if len(strides) != len(min_sizes):
        raise AnchorConfigError(
            f"Got {len(strides)} stride levels but {len(min_sizes)} min-size levels"
        )
    for stride, level in zip(strides, min_sizes):
        if stride <= 0:
            raise AnchorConfigError(f"Stride must be positive, got {stride}")
        if len(level) == 0 or any(m <= 0 for m in level):
            raise AnchorConfigError(f"Min sizes for stride {stride} must be non-empty and positive, got {tuple(level)}")


def anchor_count(width: int, height: int, strides: Sequence[int], min_sizes: Sequence[Sequence[int]]) -> int:
    """Closed-form anchor total: sum over levels of grid cells times min sizes at that level."""
    _validate(width, height, strides, min_sizes)
    return sum(
        math.ceil(height / stride) * math.ceil(width / stride) * len(level)
        for stride, level in zip(strides, min_sizes)
    )


def generate_anchors(
    width: int,
    height: int,
    strides: Sequence[int] = ANCHOR_STRIDES,
    min_sizes: Sequence[Sequence[int]] = ANCHOR_MIN_SIZES,
) -> np.ndarray:
    """
    Builds the ordered anchor table as an (N, 4) float32 array of (cx, cy, w, h),
    normalized to the input resolution.

    Order is level by level, then grid row, then grid column, then min size.
    The decoder indexes the model outputs positionally against this order.
    """
    _validate(width, height, strides, min_sizes)

    levels = []
    for stride, level in zip(strides, min_sizes):
        feature_w = math.ceil(width / stride)
        feature_h = math.ceil(height / stride)
        sizes = np.asarray(level, dtype=np.float64)

        rows, cols = np.meshgrid(np.arange(feature_h), np.arange(feature_w), indexing="ij")
        cx = (cols.reshape(-1) + 0.5) * stride / width
        cy = (rows.reshape(-1) + 0.5) * stride / height

        # Each cell repeats once per min size, min sizes vary fastest
        n_sizes = sizes.shape[0]
        block = np.empty((cx.shape[0], n_sizes, 4), dtype=np.float64)
        block[:, :, 0] = cx[:, None]
        block[:, :, 1] = cy[:, None]
        block[:, :, 2] = (sizes / width)[None, :]
        block[:, :, 3] = (sizes / height)[None, :]
        levels.append(block.reshape(-1, 4))

    anchors = np.concatenate(levels, axis=0).astype(np.float32)
    anchors.setflags(write=False)
    return anchors


@lru_cache(maxsize=8)
def get_anchors(config: AnchorConfig = AnchorConfig()) -> np.ndarray:
    """Returns the cached, read-only anchor table for a resolution config."""
    return generate_anchors(config.input_width, config.input_height, config.strides, config.min_sizes)
