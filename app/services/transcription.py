import asyncio
import logging

import numpy as np
from faster_whisper import WhisperModel

from app.config import settings
from app.models import AudioSegment

logger = logging.getLogger(__name__)

# Whisper expects ISO-639-1 codes; sessions carry human-readable labels.
LANGUAGE_CODES = {
    "arabic": "ar",
    "chinese": "zh",
    "dutch": "nl",
    "english": "en",
    "french": "fr",
    "german": "de",
    "hindi": "hi",
    "italian": "it",
    "japanese": "ja",
    "korean": "ko",
    "polish": "pl",
    "portuguese": "pt",
    "russian": "ru",
    "spanish": "es",
    "swedish": "sv",
    "turkish": "tr",
    "ukrainian": "uk",
}


def language_code(label: str | None) -> str | None:
    """Map a language label ("Spanish", "es") to a Whisper code, or None to auto-detect."""
    if not label:
        return None
    label = label.strip().lower()
    if label in LANGUAGE_CODES.values():
        return label
    return LANGUAGE_CODES.get(label)


class WhisperService:
    """Lazy singleton around a faster-whisper model.

    The model is downloaded and loaded on the first call to ``get()``,
    not at import time or server startup.
    """

    _instance: "WhisperService | None" = None

    def __init__(self) -> None:
        logger.info("Loading Whisper model %s", settings.whisper_model)
        self.model = WhisperModel(
            settings.whisper_model,
            device=settings.whisper_device,
            compute_type=settings.whisper_compute_type,
        )

    @classmethod
    def get(cls) -> "WhisperService":
        """Return the singleton, creating it (and downloading the model) if needed."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def transcribe(self, samples: np.ndarray, language: str | None = None) -> str:
        """Transcribe 16 kHz mono float32 samples. Blocking, run off the event loop.

        The VAD filter drops silence, so a segment without speech comes back as "".
        """
        segments, _info = self.model.transcribe(
            samples.astype(np.float32).flatten(),
            language=language_code(language),
            beam_size=5,
            vad_filter=True,
        )
        # segments is a lazy generator; the join forces evaluation
        return " ".join(seg.text.strip() for seg in segments).strip()


async def transcribe_segment(segment: AudioSegment, language: str | None) -> str | None:
    """Transcribe one captured segment; None when no speech was detected."""
    if segment.sample_rate != 16000:
        logger.warning(
            "Segment %d captured at %d Hz; Whisper expects 16000 Hz",
            segment.index, segment.sample_rate,
        )
    text = await asyncio.to_thread(
        lambda: WhisperService.get().transcribe(segment.samples, language)
    )
    return text or None
