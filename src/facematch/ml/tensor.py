"""Rank-independent view over model output tensors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


@dataclass(frozen=True)
class Tensor:
    """A shape plus a contiguous row-major float32 buffer."""

    shape: tuple[int, ...]
    buffer: NDArray[np.float32]

    @classmethod
    def from_array(cls, data: ArrayLike) -> Tensor:
        array = np.ascontiguousarray(data, dtype=np.float32)
        return cls(shape=tuple(array.shape), buffer=array.reshape(-1))

    @property
    def size(self) -> int:
        return int(self.buffer.size)

    def flatten(self) -> NDArray[np.float32]:
        """Return the values in row-major order, whatever the rank."""
        return self.buffer
