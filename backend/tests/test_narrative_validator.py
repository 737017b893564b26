import json
import unittest

from reality_maker.errors import NarrativeGenerationError, NarrativeParseError, NarrativeValidationError
from reality_maker.services.generative_backend import GenerationBackendError
from reality_maker.services.narrative_validator import (
    generate_validated_narrative,
    parse_narrative,
    strip_code_fences,
    validate_narrative,
)

from fakes import ScriptedBackend, narrative_doc

VALID = narrative_doc(["s1", "s2", "s3"])


class TestParseNarrative(unittest.TestCase):
    def test_strips_markdown_fences(self) -> None:
        self.assertEqual(strip_code_fences('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fences('```\n{"a": 1}```'), '{"a": 1}')
        self.assertEqual(parse_narrative("```JSON\n" + json.dumps(VALID) + "\n```"), VALID)

    def test_fences_inside_the_document_are_kept(self) -> None:
        doc = dict(VALID, metadata={"note": "wrap code in ```json blocks```"})
        self.assertEqual(parse_narrative("```json\n" + json.dumps(doc) + "\n```"), doc)
        self.assertEqual(parse_narrative(json.dumps(doc)), doc)

    def test_rejects_non_json(self) -> None:
        for text in ("", "   ", "```json\n```", "Here you go: {broken", "[1, 2, 3]", '"just a string"'):
            with self.assertRaises(NarrativeParseError):
                parse_narrative(text)


class TestValidateNarrative(unittest.TestCase):
    def test_valid_document_passes_unchanged(self) -> None:
        self.assertIs(validate_narrative(VALID), VALID)

    def test_missing_or_empty_required_fields(self) -> None:
        doc = dict(VALID, metadata={}, key_moments=None)
        doc.pop("characters")
        with self.assertRaises(NarrativeValidationError) as ctx:
            validate_narrative(doc)
        self.assertEqual(
            ctx.exception.problems,
            [
                "Missing required field: characters",
                "Missing required field: key_moments",
                "Missing required field: metadata",
            ],
        )

    def test_acts_must_be_exactly_three(self) -> None:
        missing = dict(VALID, narrative_structure={"act_1": {"scenes": ["s1"]}, "act_3": {"scenes": ["s3"]}})
        with self.assertRaises(NarrativeValidationError) as ctx:
            validate_narrative(missing)
        self.assertIn("act_2", str(ctx.exception))

        extra = dict(VALID, narrative_structure=dict(VALID["narrative_structure"], act_4={"scenes": []}))
        with self.assertRaises(NarrativeValidationError) as ctx:
            validate_narrative(extra)
        self.assertIn("act_4", str(ctx.exception))

    def test_other_structure_keys_are_allowed(self) -> None:
        doc = dict(VALID, narrative_structure=dict(VALID["narrative_structure"], theme="betrayal"))
        self.assertIs(validate_narrative(doc), doc)

    def test_structure_must_be_an_object(self) -> None:
        with self.assertRaises(NarrativeValidationError):
            validate_narrative(dict(VALID, narrative_structure=["act_1", "act_2", "act_3"]))


class TestGenerateValidatedNarrative(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps = []

    def generate(self, backend, **kwargs):
        return generate_validated_narrative(backend, "system", "user", sleep=self.sleeps.append, **kwargs)

    def test_first_valid_response_wins(self) -> None:
        backend = ScriptedBackend([json.dumps(VALID)])
        self.assertEqual(self.generate(backend), VALID)
        self.assertEqual(len(backend.calls), 1)
        self.assertEqual(self.sleeps, [])

    def test_retries_with_same_prompt_until_valid(self) -> None:
        missing_metadata = {k: v for k, v in VALID.items() if k != "metadata"}
        backend = ScriptedBackend(["not json", "```json\n" + json.dumps(missing_metadata) + "\n```", json.dumps(VALID)])

        self.assertEqual(self.generate(backend), VALID)
        self.assertEqual(backend.calls, ["user", "user", "user"])
        self.assertEqual(self.sleeps, [2.0, 2.0])

    def test_gives_up_after_max_attempts(self) -> None:
        backend = ScriptedBackend(["{}"])
        with self.assertRaises(NarrativeGenerationError) as ctx:
            self.generate(backend, retry_delay=0.5)

        self.assertEqual(len(backend.calls), 3)
        self.assertEqual(self.sleeps, [0.5, 0.5])
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsInstance(ctx.exception.last_error, NarrativeValidationError)
        self.assertFalse(ctx.exception.retryable)

    def test_max_attempts_is_configurable(self) -> None:
        backend = ScriptedBackend(["nope"])
        with self.assertRaises(NarrativeGenerationError):
            self.generate(backend, max_attempts=1)
        self.assertEqual(len(backend.calls), 1)
        self.assertEqual(self.sleeps, [])

    def test_backend_errors_propagate(self) -> None:
        backend = ScriptedBackend([GenerationBackendError("connection refused")])
        with self.assertRaises(GenerationBackendError):
            self.generate(backend)
        self.assertEqual(len(backend.calls), 1)


if __name__ == "__main__":
    unittest.main()
