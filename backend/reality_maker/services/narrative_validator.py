"""
Validation of showrunner output and the bounded generation loop around it.

Generative backends are unreliable: they wrap JSON in markdown fences, drop
fields, or return prose. Only a document that passes `validate_narrative` is
ever handed back to the caller.
"""

import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

from reality_maker.errors import (
    NarrativeGenerationError,
    NarrativeParseError,
    NarrativeValidationError,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "characters",
    "narrative_structure",
    "key_moments",
    "narration_points",
    "metadata",
)
REQUIRED_ACTS = ("act_1", "act_2", "act_3")

_LEADING_FENCE_RE = re.compile(r"^```(?:json)?[ \t]*", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"```$")
_ACT_KEY_RE = re.compile(r"^act_\d+$")


def strip_code_fences(text: str) -> str:
    """Remove the ```json / ``` markers the model wraps around JSON. Fences inside the document are kept."""
    cleaned = (text or "").strip()
    cleaned = _LEADING_FENCE_RE.sub("", cleaned, count=1).strip()
    return _TRAILING_FENCE_RE.sub("", cleaned, count=1).strip()


def parse_narrative(text: str) -> Dict[str, Any]:
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise NarrativeParseError("Empty response from generative backend")
    try:
        doc = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise NarrativeParseError(f"Invalid JSON from generative backend: {e}") from e
    if not isinstance(doc, dict):
        raise NarrativeParseError(f"Expected a JSON object, got {type(doc).__name__}")
    return doc


def validate_narrative(doc: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check that a parsed narrative carries every required field.

    Required fields must be present and non-empty. narrative_structure must hold
    exactly act_1, act_2 and act_3 (other non-act keys are allowed).

    Raises:
        NarrativeValidationError listing every problem found.
    """
    problems: List[str] = []
    for name in REQUIRED_FIELDS:
        if not doc.get(name):
            problems.append(f"Missing required field: {name}")

    structure = doc.get("narrative_structure")
    if structure and not isinstance(structure, dict):
        problems.append("narrative_structure must be an object")
    elif structure:
        missing = [act for act in REQUIRED_ACTS if not structure.get(act)]
        if missing:
            problems.append(f"Missing required acts in narrative_structure: {', '.join(missing)}")
        extra = sorted(k for k in structure if _ACT_KEY_RE.match(k) and k not in REQUIRED_ACTS)
        if extra:
            problems.append(f"Unexpected acts in narrative_structure: {', '.join(extra)}")

    if problems:
        raise NarrativeValidationError(problems)
    return doc


def generate_validated_narrative(
    backend: Any,
    system_prompt: str,
    user_prompt: str,
    max_attempts: int = 3,
    retry_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    Ask the backend for a narrative until one validates.

    The prompt is resent unchanged on every attempt, with a fixed delay between
    attempts. Only parse and validation failures are consumed here; transport
    errors raised by the backend propagate to the job retry policy.

    Raises:
        NarrativeGenerationError after max_attempts invalid responses.
    """
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        raw = backend.generate(system_prompt, user_prompt)
        try:
            doc = validate_narrative(parse_narrative(raw))
        except (NarrativeParseError, NarrativeValidationError) as e:
            last_error = e
            logger.warning("Narrative attempt %d/%d rejected: %s", attempt, max_attempts, e)
            if attempt < max_attempts:
                sleep(retry_delay)
            continue

        logger.info("Valid narrative generated on attempt %d", attempt)
        return doc

    raise NarrativeGenerationError(max_attempts, last_error)
