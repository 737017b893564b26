import logging
import os
from typing import Optional

import httpx

from reality_maker.config import Settings, get_settings
from reality_maker.errors import CollaboratorError, PipelineError

logger = logging.getLogger(__name__)


class SpeechError(CollaboratorError):
    pass


class SpeechRejectedError(PipelineError):
    """The TTS service refused the request (bad key, bad voice). Not retried."""


class SpeechSynthesizer:
    """Interface: synthesize(text, output_path) -> output_path."""

    def synthesize(self, text: str, output_path: str) -> str:
        raise NotImplementedError


def optimize_text_for_speech(text: str) -> str:
    """Collapse whitespace and drop filler openers that read badly aloud."""
    result = text or ""
    for filler in ("In this scene,", "We see", "The scene shows", "Here we have"):
        result = result.replace(filler, "")
    return " ".join(result.split()).strip()


class ElevenLabsSynthesizer(SpeechSynthesizer):
    """
    Client for the ElevenLabs Text-to-Speech API.

    Writes MP3 audio for one narration line per call.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self.api_key = self.settings.elevenlabs.api_key
        self.base_url = self.settings.elevenlabs.base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=self.settings.elevenlabs.timeout_seconds)

    def synthesize(self, text: str, output_path: str, voice_id: Optional[str] = None) -> str:
        text = optimize_text_for_speech(text)
        if not text:
            raise ValueError("Cannot synthesize empty narration text")

        voice = voice_id or self.settings.elevenlabs.voice_id
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

        url = f"{self.base_url}/text-to-speech/{voice}"
        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.api_key,
        }
        data = {
            "text": text,
            "model_id": self.settings.elevenlabs.model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }

        try:
            response = self.client.post(url, json=data, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (400, 401, 403, 404, 422):
                raise SpeechRejectedError(f"ElevenLabs rejected the request ({status}): {e.response.text[:200]}") from e
            raise SpeechError(f"ElevenLabs request failed ({status})") from e
        except httpx.HTTPError as e:
            raise SpeechError(f"ElevenLabs request failed: {e}") from e

        with open(output_path, "wb") as f:
            f.write(response.content)

        logger.debug("Synthesized %d chars -> %s", len(text), output_path)
        return output_path
