import json
import tempfile
import unittest
from pathlib import Path

from src.domain.exceptions import ConfigDecodeException
from src.infrastructure.toml_decoder import TomlConfigDecoder


class TestTomlConfigDecoder(unittest.TestCase):
    def setUp(self) -> None:
        self.decoder = TomlConfigDecoder()

    def test_decode_nested_document(self) -> None:
        document = self.decoder.decode(
            'edition = "2021"\nmax_width = 120\nignore = ["target"]\n[nested]\nflag = true\n'
        )
        self.assertEqual(document, {
            "edition": "2021",
            "max_width": 120,
            "ignore": ["target"],
            "nested": {"flag": True},
        })

    def test_dates_become_strings(self) -> None:
        document = self.decoder.decode("released = 2024-01-02\nat = 2024-01-02T03:04:05Z\n")
        self.assertEqual(document["released"], "2024-01-02")
        self.assertEqual(document["at"], "2024-01-02T03:04:05+00:00")

    def test_non_finite_floats_become_null(self) -> None:
        document = self.decoder.decode("max_width = nan\nx = inf\n[nested]\ny = -inf\nz = 1.5\n")
        self.assertEqual(document, {"max_width": None, "x": None, "nested": {"y": None, "z": 1.5}})
        self.assertNotIn("NaN", json.dumps(document))
        self.assertNotIn("Infinity", json.dumps(document))

    def test_invalid_toml_raises(self) -> None:
        with self.assertRaises(ConfigDecodeException):
            self.decoder.decode("max_width = = 3", source="rustfmt.toml")

    def test_decode_file_reads_utf8(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "rustfmt.toml"
            path.write_text('newline_style = "Unix"\n', encoding="utf-8")

            self.assertEqual(self.decoder.decode_file(path), {"newline_style": "Unix"})

    def test_missing_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ConfigDecodeException) as ctx:
                self.decoder.decode_file(Path(tmp) / "rustfmt.toml")
            self.assertIn("rustfmt.toml", str(ctx.exception))
