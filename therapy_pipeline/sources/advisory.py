"""Advisory text generators.

The advisory generator only adds reasoning bullets. It is never consulted
for drug choice, dose or safety. OllamaAdvisor keeps PHI on-premise by
using a local Ollama server.
"""

import json
import logging

import requests

from ..config import Config
from ..models import PatientContext
from .base import AdvisoryTextGenerator

logger = logging.getLogger(__name__)


FALLBACK_REASONING = "Rule-based recommendation"

SYSTEM_PROMPT = """You are a clinical pharmacology advisor. Provide concise reasoning for drug selection.

RULES:
1. Only provide 2-4 bullet points of reasoning
2. Reference relevant guidelines if applicable
3. Never recommend a drug or a dose - only explain the clinical considerations

Respond with JSON: {"reasoning": ["point1", "point2"]}"""


def build_prompt(context: PatientContext, indication: str, intent_text: str) -> str:
    """Build the user prompt from the patient context."""
    demo = context.demographics
    conditions = ", ".join(c.display for c in context.conditions) or "none"
    allergies = ", ".join(a.substance for a in context.allergies) or "none"
    egfr = context.organ_function.egfr
    return (
        f"Patient: {demo.age:g}{demo.sex}\n"
        f"Conditions: {conditions}\n"
        f"Allergies: {allergies}\n"
        f"eGFR: {egfr if egfr is not None else 'unknown'}\n\n"
        f"Indication: {indication}\n"
        f"Prescriber notes: {intent_text}\n\n"
        "Explain the considerations for drug selection."
    )


def parse_reasoning(content: str) -> list[str]:
    """Parse {"reasoning": [...]} from a model response.

    Raises:
        ValueError: if the content is not the expected JSON object
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON response: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("reasoning"), list):
        raise ValueError("Response missing 'reasoning' list")
    return [str(item).strip() for item in data["reasoning"] if str(item).strip()]


class OllamaAdvisor(AdvisoryTextGenerator):
    """Ollama-backed advisory text generator."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize Ollama advisor.

        Args:
            base_url: Ollama API base URL. Uses config if None.
            model: Model to use. Uses config if None.
            timeout: Request timeout in seconds.
        """
        self.base_url = (base_url or Config.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or Config.OLLAMA_MODEL
        self.timeout = timeout or Config.ADVISORY_TIMEOUT_SECONDS
        self.session = requests.Session()

    def enrich(self, context: PatientContext, indication: str, intent_text: str) -> list[str]:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(context, indication, intent_text)},
            ],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.3},
        }

        try:
            response = self.session.post(
                f"{self.base_url}/api/chat",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.error(f"Ollama request failed: {e}")
            raise

        if not isinstance(data, dict) or not isinstance(data.get("message"), dict):
            raise ValueError("Ollama response missing 'message' object")
        content = data["message"].get("content", "{}")
        if not isinstance(content, str):
            raise ValueError("Ollama message content is not text")
        bullets = parse_reasoning(content)
        logger.info(f"Advisory enrichment returned {len(bullets)} bullet(s)")
        return bullets


class NullAdvisor(AdvisoryTextGenerator):
    """Used when advisory enrichment is disabled."""

    def enrich(self, context: PatientContext, indication: str, intent_text: str) -> list[str]:
        return []


def get_advisor() -> AdvisoryTextGenerator:
    """Get the configured advisory generator."""
    if Config.is_advisory_enabled():
        return OllamaAdvisor()
    return NullAdvisor()
