"""Tests for decoding, letterbox geometry and tensor layout."""

from __future__ import annotations

import base64

import numpy as np
import pytest
from helpers import png_bytes

from facematch.errors import DecodeFailureError, InvalidInputError
from facematch.ml.preprocessing import (
    ResizeContext,
    decode_base64_image,
    decode_image,
    letterbox_resize,
    map_to_canvas,
    to_tensor_layout,
    unmap,
)


class TestLetterboxResize:
    @pytest.mark.parametrize(
        ("width", "height", "target"),
        [(1280, 720, 640), (300, 600, 640), (640, 640, 640), (1000, 333, 320), (50, 40, 640)],
    )
    def test_geometry(self, width: int, height: int, target: int) -> None:
        image = np.zeros((height, width, 3), dtype=np.uint8)
        canvas, ctx = letterbox_resize(image, target)

        assert canvas.shape == (target, target, 3)
        assert ctx.scale == pytest.approx(min(target / width, target / height))
        assert ctx.offset_x == (target - ctx.new_width) // 2
        assert ctx.offset_y == (target - ctx.new_height) // 2
        assert abs(ctx.new_width - width * ctx.scale) <= 0.5
        assert abs(ctx.new_height - height * ctx.scale) <= 0.5
        assert ctx.target_size == target

    def test_landscape_is_padded_top_and_bottom(self) -> None:
        image = np.full((720, 1280, 3), 200, dtype=np.uint8)
        canvas, ctx = letterbox_resize(image, 640)

        assert (ctx.new_width, ctx.new_height) == (640, 360)
        assert (ctx.offset_x, ctx.offset_y) == (0, 140)
        assert np.all(canvas[:140] == 114)
        assert np.all(canvas[500:] == 114)
        assert np.all(canvas[140:500] == 200)

    def test_custom_pad_value(self) -> None:
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        canvas, _ = letterbox_resize(image, 64, pad_value=0)
        assert canvas.max() == 0

    def test_empty_image_rejected(self) -> None:
        with pytest.raises(InvalidInputError):
            letterbox_resize(np.zeros((0, 10, 3), dtype=np.uint8), 64)


class TestUnmap:
    def test_formula(self) -> None:
        ctx = ResizeContext(scale=0.5, offset_x=0, offset_y=140, new_width=640, new_height=360, target_size=640)
        assert unmap(320.0, 320.0, ctx) == pytest.approx((640.0, 360.0))

    @pytest.mark.parametrize("scale", [0.1, 0.5, 1.0, 1.7, 3.25])
    @pytest.mark.parametrize("offset", [(0, 0), (0, 140), (37, 0)])
    def test_round_trip(self, scale: float, offset: tuple[int, int]) -> None:
        ctx = ResizeContext(scale=scale, offset_x=offset[0], offset_y=offset[1], new_width=1, new_height=1, target_size=640)
        rng = np.random.default_rng(7)
        for x, y in rng.uniform(-50, 2000, size=(20, 2)):
            cx, cy = map_to_canvas(x, y, ctx)
            assert unmap(cx, cy, ctx) == pytest.approx((x, y), abs=1e-9)

    def test_round_trip_through_real_resize(self) -> None:
        image = np.zeros((480, 1000, 3), dtype=np.uint8)
        _, ctx = letterbox_resize(image, 640)
        assert unmap(*map_to_canvas(999.0, 479.0, ctx), ctx) == pytest.approx((999.0, 479.0))


class TestTensorLayout:
    def test_channel_swap_and_planar_layout(self) -> None:
        image = np.zeros((2, 3, 3), dtype=np.uint8)
        image[..., 0] = 10  # B
        image[..., 1] = 20  # G
        image[..., 2] = 30  # R

        tensor = to_tensor_layout(image, mean=(0, 0, 0), std=(1, 1, 1))

        assert tensor.shape == (1, 3, 2, 3)
        assert tensor.dtype == np.float32
        assert np.all(tensor[0, 0] == 30)
        assert np.all(tensor[0, 1] == 20)
        assert np.all(tensor[0, 2] == 10)

    def test_mean_std_per_channel(self) -> None:
        image = np.full((4, 4, 3), 255, dtype=np.uint8)
        tensor = to_tensor_layout(image, mean=(127.5, 127.5, 127.5), std=(128.0, 128.0, 128.0))
        assert np.allclose(tensor, (255 - 127.5) / 128.0)

    def test_normalize_divides_by_255_first(self) -> None:
        image = np.full((1, 1, 3), 255, dtype=np.uint8)
        tensor = to_tensor_layout(image, mean=(0.5, 0.25, 0.0), std=(0.5, 0.5, 1.0), normalize=True)
        assert tensor[0, :, 0, 0] == pytest.approx([1.0, 1.5, 1.0])

    def test_rejects_grayscale(self) -> None:
        with pytest.raises(InvalidInputError):
            to_tensor_layout(np.zeros((4, 4), dtype=np.uint8), (0, 0, 0), (1, 1, 1))


class TestDecodeImage:
    def test_decodes_png(self) -> None:
        image = decode_image(png_bytes(32, 16, value=90))
        assert image.shape == (16, 32, 3)
        assert image.dtype == np.uint8
        assert np.all(image == 90)

    def test_empty_bytes(self) -> None:
        with pytest.raises(DecodeFailureError):
            decode_image(b"")

    def test_garbage_bytes(self) -> None:
        with pytest.raises(DecodeFailureError):
            decode_image(b"definitely not an image")

    def test_pixel_limit(self) -> None:
        with pytest.raises(InvalidInputError):
            decode_image(png_bytes(100, 100), max_pixels=100 * 99)

    def test_base64_with_data_uri_prefix(self) -> None:
        encoded = base64.b64encode(png_bytes(8, 8)).decode()
        image = decode_base64_image(f"data:image/png;base64,{encoded}")
        assert image.shape == (8, 8, 3)

    def test_invalid_base64(self) -> None:
        with pytest.raises(DecodeFailureError):
            decode_base64_image("not base64 at all!")
