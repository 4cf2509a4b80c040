"""Tests for decoding frames into model inputs."""
import numpy as np
import pytest
from PIL import Image

from feeder_vision.core.errors import DecodeFailed
from feeder_vision.core.folder_scanner import DecodeStatus, scan_folder
from feeder_vision.core.preprocessor import (
    InputGeometry,
    image_to_tensor,
    load_image_tensor,
    prepare_frame,
    tensor_from_bytes,
)

from conftest import RED, write_corrupt_frame, write_frame


class TestImageToTensor:
    def test_shape_and_dtype(self):
        tensor = image_to_tensor(Image.new("RGB", (64, 48), RED), InputGeometry(size=32))
        assert tensor.shape == (3, 32, 32)
        assert tensor.dtype == np.float32
        assert tensor.flags["C_CONTIGUOUS"]

    def test_normalizes_per_channel(self):
        geometry = InputGeometry(size=8)
        tensor = image_to_tensor(Image.new("RGB", (8, 8), (255, 0, 0)), geometry)
        assert tensor[0].mean() == pytest.approx((1.0 - 0.485) / 0.229, rel=1e-4)
        assert tensor[1].mean() == pytest.approx((0.0 - 0.456) / 0.224, rel=1e-4)

    def test_converts_grayscale_and_alpha(self):
        geometry = InputGeometry(size=16)
        assert image_to_tensor(Image.new("L", (20, 20), 128), geometry).shape == (3, 16, 16)
        assert image_to_tensor(Image.new("RGBA", (20, 20), (1, 2, 3, 4)), geometry).shape == (3, 16, 16)

    def test_default_geometry_is_224(self):
        assert InputGeometry().shape == (3, 224, 224)


class TestLoading:
    def test_load_png(self, tmp_path):
        path = write_frame(tmp_path / "a.png", fmt="PNG")
        assert load_image_tensor(path, InputGeometry(size=16)).shape == (3, 16, 16)

    def test_garbage_bytes_raise_decode_failed(self):
        with pytest.raises(DecodeFailed):
            tensor_from_bytes(b"garbage", InputGeometry(size=16))

    def test_truncated_jpeg_raises_decode_failed(self, tmp_path):
        path = tmp_path / "a.jpg"
        # Noise keeps the entropy-coded data large, so the cut lands after the headers
        Image.effect_noise((200, 200), 64).convert("RGB").save(path, "JPEG")
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 2])
        with pytest.raises(DecodeFailed):
            load_image_tensor(path, InputGeometry(size=16))

    def test_missing_file_raises_decode_failed(self, tmp_path):
        with pytest.raises(DecodeFailed) as exc_info:
            load_image_tensor(tmp_path / "gone.jpg", InputGeometry(size=16))
        assert exc_info.value.path == tmp_path / "gone.jpg"


class TestPrepareFrame:
    def test_marks_decoded(self, tmp_path):
        write_frame(tmp_path / "a.jpg")
        frame = scan_folder(tmp_path).frames[0]
        prepared = prepare_frame(3, frame, InputGeometry(size=16))
        assert prepared.ok
        assert prepared.index == 3
        assert prepared.frame.decode_status is DecodeStatus.DECODED
        # The input record is left untouched
        assert frame.decode_status is DecodeStatus.PENDING

    def test_marks_decode_failed_without_raising(self, tmp_path):
        write_corrupt_frame(tmp_path / "bad.jpg")
        frame = scan_folder(tmp_path).frames[0]
        prepared = prepare_frame(0, frame, InputGeometry(size=16))
        assert not prepared.ok
        assert prepared.tensor is None
        assert prepared.frame.decode_failed
        assert prepared.frame.error
