"""
Speech-to-text for extracted audio, plus speaker labelling.

The transcriber is an opaque external process (the whisper CLI); this module only
runs it and normalizes its JSON output into TranscriptSegment objects.
"""

import json
import logging
import math
import os
import subprocess
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

from reality_maker.config import Settings, get_settings
from reality_maker.errors import CollaboratorError
from reality_maker.models import TranscriptSegment

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8


class TranscriptionError(CollaboratorError):
    pass


class Transcriber:
    """Interface: transcribe(audio_path, video_id) -> list of TranscriptSegment."""

    def transcribe(self, audio_path: str, video_id: str) -> List[TranscriptSegment]:
        raise NotImplementedError


class WhisperTranscriber(Transcriber):
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _command(self, audio_path: str, output_dir: str) -> List[str]:
        cfg = self.settings.whisper
        return [
            cfg.binary,
            audio_path,
            "--model", cfg.model,
            "--language", cfg.language,
            "--task", "transcribe",
            "--output_format", "json",
            "--output_dir", output_dir,
            "--verbose", "False",
        ]

    def transcribe(self, audio_path: str, video_id: str) -> List[TranscriptSegment]:
        cfg = self.settings.whisper
        logger.info("Transcribing %s with whisper model %s (%s)", audio_path, cfg.model, cfg.language)

        with tempfile.TemporaryDirectory(prefix="whisper_", dir=self._temp_root()) as out_dir:
            cmd = self._command(audio_path, out_dir)
            try:
                proc = subprocess.run(cmd, capture_output=True, text=True, timeout=cfg.timeout_seconds, check=False)
            except subprocess.TimeoutExpired:
                raise TranscriptionError(f"Whisper timed out after {cfg.timeout_seconds}s on {audio_path}")
            except FileNotFoundError:
                raise TranscriptionError(f"Whisper binary not found: {cfg.binary}")

            if proc.returncode != 0:
                tail = "\n".join((proc.stderr or "").strip().splitlines()[-10:])
                raise TranscriptionError(f"Whisper failed (exit {proc.returncode}): {tail or 'no stderr'}")

            output_path = Path(out_dir) / f"{Path(audio_path).stem}.json"
            if not output_path.exists():
                raise TranscriptionError(f"Whisper produced no output for {audio_path}")
            with open(output_path, "r", encoding="utf-8") as f:
                raw = json.load(f)

        segments = parse_whisper_segments(raw, video_id, placeholder_speaker=cfg.speaker_labels[0])
        logger.info("Transcription complete: %d segments", len(segments))
        return segments

    def _temp_root(self) -> str:
        os.makedirs(self.settings.temp_dir, exist_ok=True)
        return self.settings.temp_dir


def _confidence(segment: dict) -> float:
    if "confidence" in segment:
        return round(float(segment["confidence"]), 2)
    if "avg_logprob" in segment:
        return round(min(1.0, max(0.0, math.exp(float(segment["avg_logprob"])))), 2)
    return DEFAULT_CONFIDENCE


def parse_whisper_segments(raw: dict, video_id: str, placeholder_speaker: str = "person_1") -> List[TranscriptSegment]:
    """Normalize whisper JSON into segments; empty texts and empty ranges are dropped."""
    segments = []
    for seg in raw.get("segments", []):
        text = str(seg.get("text", "")).strip()
        start = round(float(seg.get("start", 0.0)), 2)
        end = round(float(seg.get("end", 0.0)), 2)
        if not text or end <= start:
            continue
        segments.append(
            TranscriptSegment(
                start=start,
                end=end,
                speaker=placeholder_speaker,
                text=text,
                video_id=video_id,
                confidence=_confidence(seg),
            )
        )
    return segments


class SpeakerLabeler:
    """Interface: label(segments) -> segments with speaker set."""

    def label(self, segments: Sequence[TranscriptSegment]) -> List[TranscriptSegment]:
        raise NotImplementedError


class RotatingSpeakerLabeler(SpeakerLabeler):
    """
    Placeholder diarization: assume the speaker changes after a long pause and
    rotate through a fixed set of labels.
    """

    def __init__(self, labels: Sequence[str] = ("person_1", "person_2", "person_3"), gap_seconds: float = 2.0):
        if not labels:
            raise ValueError("At least one speaker label is required")
        self.labels = list(labels)
        self.gap_seconds = gap_seconds

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RotatingSpeakerLabeler":
        settings = settings or get_settings()
        return cls(settings.whisper.speaker_labels, settings.whisper.speaker_gap_seconds)

    def label(self, segments: Sequence[TranscriptSegment]) -> List[TranscriptSegment]:
        current = 0
        last_end = 0.0
        labelled = []
        for seg in segments:
            if seg.start - last_end > self.gap_seconds:
                current = (current + 1) % len(self.labels)
            last_end = seg.end
            labelled.append(replace(seg, speaker=self.labels[current]))
        return labelled
