import json
import os
import tempfile
import unittest

import httpx

from reality_maker.models import Scene, TranscriptSegment, Video
from reality_maker.services.generative_backend import GenerationBackendError, OllamaBackend, create_backend
from reality_maker.services.showrunner_prompt import SHOWRUNNER_SYSTEM_PROMPT, build_showrunner_prompt
from reality_maker.services.speech import (
    ElevenLabsSynthesizer,
    SpeechError,
    SpeechRejectedError,
    optimize_text_for_speech,
)

from fakes import make_settings


class CollaboratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = make_settings(self._tmp.name)
        self.requests = []

    def client(self, handler, **kwargs) -> httpx.Client:
        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        return httpx.Client(transport=httpx.MockTransport(record), **kwargs)


class TestOllamaBackend(CollaboratorTestCase):
    def backend(self, handler) -> OllamaBackend:
        return OllamaBackend(self.settings, client=self.client(handler, base_url="http://ollama.test"))

    def test_generate(self) -> None:
        def handler(request):
            body = json.loads(request.content)
            self.assertEqual(request.url.path, "/api/generate")
            self.assertEqual(body["model"], "llama3.2:3b")
            self.assertFalse(body["stream"])
            self.assertEqual(body["options"]["temperature"], 0.3)
            self.assertEqual(body["options"]["top_k"], 40)
            self.assertTrue(body["prompt"].startswith("system\n\nuser"))
            return httpx.Response(200, json={"response": '{"characters": []}'})

        self.assertEqual(self.backend(handler).generate("system", "user"), '{"characters": []}')

    def test_missing_model_is_pulled(self) -> None:
        def handler(request):
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": [{"name": "mistral:7b"}]})
            return httpx.Response(200, json={"status": "success"})

        self.backend(handler).ensure_ready()
        self.assertEqual([r.url.path for r in self.requests], ["/api/tags", "/api/pull"])
        self.assertEqual(json.loads(self.requests[1].content)["name"], "llama3.2:3b")

    def test_present_model_is_not_pulled(self) -> None:
        def handler(request):
            return httpx.Response(200, json={"models": [{"name": "llama3.2:3b"}]})

        self.backend(handler).ensure_ready()
        self.assertEqual(len(self.requests), 1)

    def test_server_errors_are_retryable(self) -> None:
        def handler(request):
            return httpx.Response(500, text="model crashed")

        with self.assertRaises(GenerationBackendError) as ctx:
            self.backend(handler).generate("system", "user")
        self.assertTrue(ctx.exception.retryable)

    def test_create_backend(self) -> None:
        self.assertIsInstance(create_backend(self.settings), OllamaBackend)
        self.settings.showrunner.backend = "gpt"
        with self.assertRaises(ValueError):
            create_backend(self.settings)


class TestElevenLabsSynthesizer(CollaboratorTestCase):
    def synthesizer(self, handler) -> ElevenLabsSynthesizer:
        return ElevenLabsSynthesizer(self.settings, client=self.client(handler))

    def test_writes_audio(self) -> None:
        def handler(request):
            self.assertEqual(request.url.path, "/v1/text-to-speech/21m00Tcm4TlvDq8ikWAM")
            self.assertEqual(request.headers["accept"], "audio/mpeg")
            self.assertEqual(json.loads(request.content)["text"], "Hello there... friend.")
            return httpx.Response(200, content=b"ID3audio")

        out = os.path.join(self._tmp.name, "narration", "001.mp3")
        path = self.synthesizer(handler).synthesize("  Hello   there... friend.  ", out)

        self.assertEqual(path, out)
        with open(out, "rb") as f:
            self.assertEqual(f.read(), b"ID3audio")

    def test_voice_override(self) -> None:
        def handler(request):
            return httpx.Response(200, content=b"ID3")

        self.synthesizer(handler).synthesize("Hi", os.path.join(self._tmp.name, "a.mp3"), voice_id="custom")
        self.assertTrue(self.requests[0].url.path.endswith("/text-to-speech/custom"))

    def test_rejected_request_is_permanent(self) -> None:
        def handler(request):
            return httpx.Response(401, text="invalid api key")

        with self.assertRaises(SpeechRejectedError) as ctx:
            self.synthesizer(handler).synthesize("Hi", os.path.join(self._tmp.name, "a.mp3"))
        self.assertFalse(ctx.exception.retryable)

    def test_rate_limit_is_retryable(self) -> None:
        def handler(request):
            return httpx.Response(429, text="slow down")

        with self.assertRaises(SpeechError) as ctx:
            self.synthesizer(handler).synthesize("Hi", os.path.join(self._tmp.name, "a.mp3"))
        self.assertTrue(ctx.exception.retryable)

    def test_text_is_tidied_for_speech(self) -> None:
        self.assertEqual(optimize_text_for_speech("In this scene,  Ana   cries.\n"), "Ana cries.")
        self.assertEqual(optimize_text_for_speech(None), "")

    def test_empty_text(self) -> None:
        with self.assertRaises(ValueError):
            self.synthesizer(lambda r: httpx.Response(200)).synthesize("   ", os.path.join(self._tmp.name, "a.mp3"))
        self.assertEqual(self.requests, [])


class TestShowrunnerPrompt(unittest.TestCase):
    def test_prompt_contains_material(self) -> None:
        video = Video(id="v1", project_id="p1", path="/a.mp4", duration=600.0, resolution="1920x1080")
        scene = Scene(
            id="s1", video_id="v1", project_id="p1", start_time=0, end_time=12.5,
            speakers=["person_1"], emotions=["anger"], importance_score=0.8,
        )
        segment = TranscriptSegment(start=1.0, end=3.0, speaker="person_1", text="Who took it?", video_id="v1", emotion="anger")

        prompt = build_showrunner_prompt([scene], [segment], [video], style="COMEDY")

        self.assertIn("Episode style: COMEDY", prompt)
        self.assertIn("### SCENE s1", prompt)
        self.assertIn("- Duration: 12.5s", prompt)
        self.assertIn('[1.0s - 3.0s] person_1: "Who took it?" [anger]', prompt)
        self.assertIn("comedy style", prompt)

    def test_system_prompt_describes_required_fields(self) -> None:
        for name in ("characters", "narrative_structure", "key_moments", "narration_points", "metadata", "act_3"):
            self.assertIn(name, SHOWRUNNER_SYSTEM_PROMPT)


if __name__ == "__main__":
    unittest.main()
