"""
Generative text backends for the showrunner.

Backends return raw text. Parsing and validation live in narrative_validator;
a backend only raises for transport problems (GenerationBackendError), which
the job dispatcher retries.
"""

import logging
from typing import Any, Dict, List, Optional

import google.generativeai as genai
import httpx
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from reality_maker.config import Settings, get_settings
from reality_maker.errors import CollaboratorError

logger = logging.getLogger(__name__)

JSON_ONLY_INSTRUCTION = (
    "CRITICAL: Return ONLY valid JSON. No markdown, no explanation, no code blocks. "
    "Just the raw JSON object."
)


class GenerationBackendError(CollaboratorError):
    pass


class GenerativeBackend:
    """Interface: generate(system_prompt, user_prompt) -> raw text."""

    name = "base"

    def ensure_ready(self) -> None:
        """Make sure the model can serve requests (pull it, check keys...)."""

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError


class OllamaBackend(GenerativeBackend):
    """Local LLM served by Ollama's HTTP API."""

    name = "ollama"

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.ollama.base_url.rstrip("/")
        self.model = self.settings.ollama.model
        self.client = client or httpx.Client(base_url=self.base_url)

    def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        try:
            response = self.client.post(path, json=payload, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise GenerationBackendError(f"Ollama request {path} failed: {e}") from e

    def list_models(self) -> List[str]:
        try:
            response = self.client.get("/api/tags", timeout=30.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GenerationBackendError(f"Ollama is not reachable at {self.base_url}: {e}") from e
        return [m.get("name", "") for m in response.json().get("models", [])]

    def pull_model(self, model: str) -> None:
        logger.info("Pulling Ollama model %s...", model)
        self._post("/api/pull", {"name": model, "stream": False}, timeout=self.settings.ollama.pull_timeout_seconds)
        logger.info("Model %s pulled", model)

    def ensure_ready(self) -> None:
        if self.model not in self.list_models():
            logger.warning("Ollama model %s not found, pulling", self.model)
            self.pull_model(self.model)

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        cfg = self.settings.showrunner
        prompt = f"{system_prompt}\n\n{user_prompt}\n\n{JSON_ONLY_INSTRUCTION}"
        logger.debug("Ollama generate with %s (%d prompt chars)", self.model, len(prompt))

        data = self._post(
            "/api/generate",
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": cfg.temperature,
                    "top_p": cfg.top_p,
                    "top_k": 40,
                    "num_predict": self.settings.ollama.max_tokens,
                },
            },
            timeout=self.settings.ollama.timeout_seconds,
        )
        return data.get("response", "")


class GeminiBackend(GenerativeBackend):
    """Google Gemini through google-generativeai."""

    name = "gemini"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        genai.configure(api_key=self.settings.gemini.api_key)
        self.model_name = self.settings.gemini.model

    def ensure_ready(self) -> None:
        if not self.settings.gemini.api_key:
            raise GenerationBackendError("GEMINI_API_KEY is not configured")

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        cfg = self.settings.showrunner
        model = genai.GenerativeModel(
            self.model_name,
            system_instruction=system_prompt,
            generation_config={
                "temperature": cfg.temperature,
                "top_p": cfg.top_p,
                "response_mime_type": "application/json",
            },
            safety_settings={
                HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
                HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
                HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
                HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
            },
        )
        try:
            response = model.generate_content(
                user_prompt,
                request_options={"timeout": self.settings.gemini.timeout_seconds},
            )
        except google_exceptions.GoogleAPIError as e:
            raise GenerationBackendError(f"Gemini generation failed: {e}") from e

        try:
            return response.text
        except ValueError as e:
            # Blocked or empty candidates: count it as an invalid generation.
            logger.warning("Gemini returned no text: %s", e)
            return ""


def create_backend(settings: Optional[Settings] = None) -> GenerativeBackend:
    settings = settings or get_settings()
    backend = settings.showrunner.backend.lower()
    if backend == "ollama":
        return OllamaBackend(settings)
    if backend == "gemini":
        return GeminiBackend(settings)
    raise ValueError(f"Unknown showrunner backend: {settings.showrunner.backend}")
