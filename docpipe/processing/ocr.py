"""
Image OCR Extractor  —  Tesseract via pytesseract
═══════════════════════════════════════════════════

Recognition runs in three coarse phases, each reported to the ProgressSink
on the extractor's own 0–1 scale:

    engine load       tesseract binary located, version read     → 0.10
    language load     requested traineddata present               → 0.40
    recognition       image decoded, then frame by frame          → 0.40 … 0.90
    done                                                          → 1.00

Multi-frame images (TIFF, animated GIF) are recognised frame by frame, so
recognition progress advances once per frame.

Low-confidence output is still returned: confidence is reported on
OcrResult / ExtractorOutput, it is never used to reject text here.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field

from docpipe.core.errors import ExtractionError
from docpipe.processing.extractors import BaseExtractor, ExtractorOutput
from docpipe.processing.progress import NULL_PROGRESS, CancellationToken, ProgressSink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Progress milestones (extractor scale)
# ---------------------------------------------------------------------------

ENGINE_LOADED    = 0.10
LANGUAGE_LOADED  = 0.40
RECOGNITION_END  = 0.90

# Share of the recognition band consumed by decoding the image
_DECODE_SHARE = 0.1


@dataclass
class OcrResult:
    text:       str
    confidence: float                 # mean word confidence 0–1; -1 when no words
    frames:     int
    word_count: int = 0
    frame_texts: list[str] = field(default_factory=list)


class ImageOcrExtractor(BaseExtractor):
    """
    Tesseract OCR over any Pillow-readable image.

    Constructor args:
        language : tesseract language string, e.g. "eng" or "eng+deu"
        timeout  : ceiling per blocking call (seconds)
    """

    def __init__(self, language: str = "eng", timeout: float = 120.0) -> None:
        super().__init__(timeout=timeout)
        self._language = language

    @property
    def method_name(self) -> str:
        return "tesseract-ocr"

    async def run(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> ExtractorOutput:
        result = await self.recognize(data, progress, cancel)
        return ExtractorOutput(
            text=result.text,
            page_count=result.frames,
            confidence=result.confidence,
        )

    async def recognize(
        self,
        data:     bytes,
        progress: ProgressSink = NULL_PROGRESS,
        cancel:   CancellationToken | None = None,
    ) -> OcrResult:
        import pytesseract

        t0 = time.monotonic()

        # ── Phase 1: engine ──────────────────────────────────────────────
        version = await self._call(pytesseract.get_tesseract_version)
        await progress.report(ENGINE_LOADED, "ocr_engine_loaded")

        # ── Phase 2: language data ───────────────────────────────────────
        available = set(await self._call(pytesseract.get_languages))
        missing = [lang for lang in self._language.split("+") if lang not in available]
        if missing:
            raise ExtractionError.failed(
                f"Tesseract language data not installed: {', '.join(missing)}"
            )
        await progress.report(LANGUAGE_LOADED, "ocr_language_loaded")

        # ── Phase 3: recognition ─────────────────────────────────────────
        frames = await self._call(self._load_frames, data)
        recognition = progress.scaled(LANGUAGE_LOADED, RECOGNITION_END)
        await recognition.report(_DECODE_SHARE, "ocr_image_decoded")

        frame_texts: list[str] = []
        confidences: list[float] = []
        for index, frame in enumerate(frames):
            if cancel is not None:
                cancel.raise_if_cancelled()
            ocr_data = await self._call(self._image_to_data, frame)
            text, frame_conf = assemble_text(ocr_data)
            frame_texts.append(text)
            confidences.extend(frame_conf)
            share = _DECODE_SHARE + (1 - _DECODE_SHARE) * (index + 1) / len(frames)
            await recognition.report(share, "ocr_recognizing")

        text = "\n\n".join(t for t in frame_texts if t.strip()).strip()
        confidence = round(sum(confidences) / len(confidences), 3) if confidences else -1.0
        await progress.report(1.0, "ocr_complete")

        logger.info(
            "Tesseract | version=%s lang=%s frames=%d words=%d confidence=%.2f elapsed_ms=%.0f",
            version, self._language, len(frames), len(confidences), confidence,
            (time.monotonic() - t0) * 1000,
        )
        return OcrResult(
            text=text,
            confidence=confidence,
            frames=len(frames),
            word_count=len(confidences),
            frame_texts=frame_texts,
        )

    # ------------------------------------------------------------------
    # Blocking helpers: run in the executor
    # ------------------------------------------------------------------

    @staticmethod
    def _load_frames(data: bytes) -> list:
        from PIL import Image, ImageSequence

        with Image.open(io.BytesIO(data)) as image:
            return [frame.convert("RGB") for frame in ImageSequence.Iterator(image)]

    def _image_to_data(self, frame) -> dict:
        import pytesseract

        return pytesseract.image_to_data(
            frame,
            lang=self._language,
            output_type=pytesseract.Output.DICT,
        )


def assemble_text(data: dict) -> tuple[str, list[float]]:
    """
    Rebuild reading-order text from pytesseract image_to_data output.

    Words sharing (block, paragraph, line) are joined with spaces; a new
    paragraph or block starts after a blank line. Returns the text and the
    per-word confidences normalised to 0–1 (negative conf = no word).
    """
    lines: list[str] = []
    words: list[str] = []
    confidences: list[float] = []
    current_key: tuple[int, int, int] | None = None

    for idx, token in enumerate(data.get("text", [])):
        word = (token or "").strip()
        if not word:
            continue

        key = (
            int(data["block_num"][idx]),
            int(data["par_num"][idx]),
            int(data["line_num"][idx]),
        )
        if key != current_key:
            if words:
                lines.append(" ".join(words))
                words = []
            if current_key is not None and key[:2] != current_key[:2]:
                lines.append("")
            current_key = key
        words.append(word)

        try:
            conf = float(data["conf"][idx])
        except (TypeError, ValueError):
            conf = -1.0
        if conf >= 0:
            confidences.append(min(conf / 100.0, 1.0))

    if words:
        lines.append(" ".join(words))
    return "\n".join(lines), confidences
