"""
Unit Tests: Image intake helpers
================================

Tests for stockmeta/core/image_processing.py
"""

import base64
import io
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from PIL import Image

from stockmeta.core.exceptions import ValidationError
from stockmeta.core.image_processing import detect_mime_type, load_image, make_preview, validate_image
from stockmeta.core.models import Row


class TestImageProcessing(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def _image(self, name, fmt, size=(800, 600), mode="RGB"):
        path = self.dir / name
        Image.new(mode, size).save(path, format=fmt)
        return path

    def test_validate_supported_formats(self):
        for name, fmt in (("a.jpg", "JPEG"), ("b.png", "PNG"), ("c.webp", "WEBP")):
            with self.subTest(fmt=fmt):
                self.assertEqual(validate_image(self._image(name, fmt)), (True, None))

    def test_validate_rejections(self):
        gif = self._image("anim.gif", "GIF")
        self.assertFalse(validate_image(gif)[0])

        disguised = self._image("really_gif.jpg", "GIF")
        valid, reason = validate_image(disguised)
        self.assertFalse(valid)
        self.assertIn("Unsupported image content", reason)

        empty = self.dir / "empty.jpg"
        empty.touch()
        self.assertEqual(validate_image(empty), (False, "File is empty"))

        self.assertEqual(validate_image(self.dir), (False, "Path is not a file"))

    @patch('stockmeta.core.image_processing.config.MAX_FILE_SIZE_BYTES', 10)
    def test_validate_size_limit(self):
        valid, reason = validate_image(self._image("big.png", "PNG"))
        self.assertFalse(valid)
        self.assertIn("File too large", reason)

    def test_preview_is_small_jpeg_data_url(self):
        preview = make_preview(self._image("big.png", "PNG", size=(1200, 400), mode="RGBA"))
        prefix = "data:image/jpeg;base64,"
        self.assertTrue(preview.startswith(prefix))

        with Image.open(io.BytesIO(base64.b64decode(preview[len(prefix):]))) as thumb:
            self.assertEqual(thumb.format, "JPEG")
            self.assertLessEqual(max(thumb.size), 256)

    def test_load_image(self):
        path = self._image("photo.png", "PNG")
        data, mime = load_image(Row(filename="photo.png", source_path=str(path)))
        self.assertEqual(data, path.read_bytes())
        self.assertEqual(mime, "image/png")
        self.assertEqual(detect_mime_type(self._image("x.webp", "WEBP")), "image/webp")

    def test_load_missing_image(self):
        with self.assertRaises(ValidationError):
            load_image(Row(filename="gone.jpg", source_path=str(self.dir / "gone.jpg")))
        with self.assertRaises(ValidationError):
            load_image(Row(filename="nopath.jpg"))


if __name__ == "__main__":
    unittest.main()
