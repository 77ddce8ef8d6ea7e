"""
Unit Tests — ImageOcrExtractor
═══════════════════════════════
pytesseract is patched: no tesseract binary is needed. Pillow decodes real
PNG / TIFF bytes generated in conftest.py.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from docpipe.core.errors import ExtractionError, ProcessingCancelled
from docpipe.processing.ocr import ImageOcrExtractor, assemble_text
from docpipe.processing.progress import CancellationToken


def _ocr_data(words, block=1, par=1, line=1, conf="90") -> dict:
    n = len(words)
    return {
        "text":      list(words),
        "block_num": [block] * n,
        "par_num":   [par] * n,
        "line_num":  [line] * n,
        "conf":      [conf] * n,
    }


def _patched_tesseract(image_to_data, languages=("eng", "osd")):
    return patch.multiple(
        "pytesseract",
        get_tesseract_version=MagicMock(return_value="5.3.0"),
        get_languages=MagicMock(return_value=list(languages)),
        image_to_data=image_to_data,
    )


@pytest.mark.unit
class TestImageOcrExtractor:

    async def test_progress_passes_at_least_four_increasing_milestones(
        self, sample_png_bytes, progress_sink,
    ):
        image_to_data = MagicMock(return_value=_ocr_data(["Invoice", "total"]))
        with _patched_tesseract(image_to_data):
            output = await ImageOcrExtractor().run(sample_png_bytes, progress=progress_sink)

        values = progress_sink.values
        assert output.text == "Invoice total"
        assert values[-1] == 1.0
        assert len(set(values[:-1])) >= 4
        assert all(a < b for a, b in zip(values, values[1:]))
        assert values[:3] == pytest.approx([0.10, 0.40, 0.45])

    async def test_multi_frame_image_recognised_frame_by_frame(
        self, sample_tiff_bytes, progress_sink,
    ):
        image_to_data = MagicMock(side_effect=[
            _ocr_data(["first", "frame"]),
            _ocr_data(["second", "frame"]),
        ])
        with _patched_tesseract(image_to_data):
            result = await ImageOcrExtractor().recognize(sample_tiff_bytes, progress=progress_sink)

        assert result.frames == 2
        assert result.text == "first frame\n\nsecond frame"
        assert image_to_data.call_count == 2
        recognising = [p for p, stage in progress_sink.events if stage == "ocr_recognizing"]
        assert recognising == pytest.approx([0.675, 0.9])

    async def test_confidence_is_mean_word_confidence(self, sample_png_bytes):
        data = _ocr_data(["low", "high"])
        data["conf"] = ["60", "90"]
        with _patched_tesseract(MagicMock(return_value=data)):
            output = await ImageOcrExtractor().run(sample_png_bytes)

        assert output.confidence == pytest.approx(0.75)
        assert output.page_count == 1

    async def test_low_confidence_text_is_still_returned(self, sample_png_bytes):
        data = _ocr_data(["blurry"], conf="12")
        with _patched_tesseract(MagicMock(return_value=data)):
            output = await ImageOcrExtractor().run(sample_png_bytes)

        assert output.text == "blurry"
        assert output.confidence == pytest.approx(0.12)

    async def test_image_without_words_has_no_confidence(self, sample_png_bytes):
        data = {"text": ["", " "], "block_num": [1, 1], "par_num": [1, 1],
                "line_num": [1, 1], "conf": ["-1", "-1"]}
        with _patched_tesseract(MagicMock(return_value=data)):
            output = await ImageOcrExtractor().run(sample_png_bytes)

        assert output.text == ""
        assert output.confidence == -1.0

    async def test_missing_language_data_raises(self, sample_png_bytes):
        with _patched_tesseract(MagicMock(), languages=("eng",)):
            with pytest.raises(ExtractionError) as exc_info:
                await ImageOcrExtractor(language="eng+deu").run(sample_png_bytes)
        assert "deu" in exc_info.value.message

    async def test_undecodable_image_raises_extraction_failed(self):
        with _patched_tesseract(MagicMock()):
            with pytest.raises(ExtractionError):
                await ImageOcrExtractor().run(b"\x89PNG\r\n\x1a\n garbage")

    async def test_cancel_before_recognition(self, sample_png_bytes):
        token = CancellationToken()
        token.cancel()
        with _patched_tesseract(MagicMock(return_value=_ocr_data(["x"]))):
            with pytest.raises(ProcessingCancelled):
                await ImageOcrExtractor().run(sample_png_bytes, cancel=token)


@pytest.mark.unit
class TestAssembleText:

    def test_lines_and_paragraphs(self):
        data = {
            "text":      ["Hello", "world", "next", "line", "New", "block"],
            "block_num": [1, 1, 1, 1, 2, 2],
            "par_num":   [1, 1, 1, 1, 1, 1],
            "line_num":  [1, 1, 2, 2, 1, 1],
            "conf":      [95, 95, 80, 80, -1, 70],
        }
        text, confidences = assemble_text(data)

        assert text == "Hello world\nnext line\n\nNew block"
        assert confidences == pytest.approx([0.95, 0.95, 0.8, 0.8, 0.7])
