"""
Text-to-speech adapters.

The real implementation uses Microsoft Edge TTS with a fixed Indonesian voice
and MP3 output; the in-memory one returns deterministic bytes for tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Protocol

import edge_tts

from capstone_backend.errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_VOICE = "id-ID-GadisNeural"
DEFAULT_RATE = "+0%"
DEFAULT_PITCH = "+0Hz"
AUDIO_CONTENT_TYPE = "audio/mpeg"
AUDIO_EXTENSION = ".mp3"


class SpeechSynthesizer(Protocol):
    def synthesize(self, text: str) -> bytes:
        ...


@dataclass
class InMemorySpeechSynthesizer:
    """Returns fake MP3 bytes derived from the text."""

    fail: bool = False

    def synthesize(self, text: str) -> bytes:
        if self.fail:
            raise UpstreamError("Error generating speech: synthesizer unavailable")
        return b"ID3" + hashlib.sha256(text.encode("utf-8")).digest()


@dataclass
class EdgeSpeechSynthesizer:
    voice: str = DEFAULT_VOICE
    rate: str = DEFAULT_RATE
    pitch: str = DEFAULT_PITCH

    async def _collect(self, text: str) -> bytes:
        communicate = edge_tts.Communicate(
            text=text, voice=self.voice, rate=self.rate, pitch=self.pitch
        )
        audio = bytearray()
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                audio.extend(chunk["data"])
        return bytes(audio)

    def synthesize(self, text: str) -> bytes:
        """
        Blocking wrapper around the edge-tts stream. Called from sync route
        handlers, which FastAPI runs in a worker thread without an event loop.
        """
        try:
            audio = asyncio.run(self._collect(text))
        except Exception as exc:
            logger.exception("Speech synthesis failed (voice=%s)", self.voice)
            raise UpstreamError(f"Error generating speech: {exc}") from exc
        if not audio:
            raise UpstreamError("Error generating speech: no audio received")
        return audio
