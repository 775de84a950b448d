import os
import json
from typing import List, Dict, Any

import requests
from dotenv import load_dotenv

from .collaborators import Hypothesis
from .exceptions import HypothesisGenerationFailed
from .models import ChangeType

# Load .env variables (LLM_MODEL, OLLAMA_HOST, HYPOTHESIS_TIMEOUT)
load_dotenv()

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
LLM_MODEL = os.getenv("LLM_MODEL", "llama3")
HYPOTHESIS_TIMEOUT = float(os.getenv("HYPOTHESIS_TIMEOUT", "60"))


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else ""
    if content.endswith("```"):
        content = content[: -3]
    return content.strip()


def build_prompt(site_id: str, learnings: List[Dict[str, Any]]) -> str:
    """
    learnings: the site's experiment log, entries like
      {"hypothesis": "...", "change_type": "copy", "result": "graduated", "probability": 0.97}
    Only the last 10 are shown to the model.
    """
    past_lines = []
    for entry in learnings[-10:]:
        past_lines.append(
            f"- {entry.get('hypothesis')} "
            f"(type={entry.get('change_type')}, result={entry.get('result')})"
        )
    past_block = "\n".join(past_lines) or "- none yet"
    change_types = "|".join(c.value for c in ChangeType)

    return f"""
You are an A/B testing expert for a small business website.
Propose ONE new hypothesis to test on site {site_id}.

Already tested (avoid repeating these):
{past_block}

Output JSON ONLY with keys:
- "hypothesis": string
- "change_type": one of {change_types}
- "priority": number from 1 to 10 (expected impact)
""".strip()


class OllamaHypothesisGenerator:
    """
    Asks a local Ollama model for the next hypothesis.
    Every failure surfaces as HypothesisGenerationFailed.
    """

    def __init__(self, host: str = OLLAMA_HOST, model: str = LLM_MODEL, timeout: float = HYPOTHESIS_TIMEOUT):
        self.host = host
        self.model = model
        self.timeout = timeout

    def next_hypothesis(self, site_id: str, learnings: List[Dict[str, Any]]) -> Hypothesis:
        url = f"{self.host}/api/chat"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are a careful conversion analyst who follows instructions exactly."},
                {"role": "user", "content": build_prompt(site_id, learnings)},
            ],
            "stream": False,
        }

        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
            # Ollama returns the whole conversation; we need the assistant message content
            content = _strip_fences(data["message"]["content"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as err:
            raise HypothesisGenerationFailed(f"hypothesis request failed: {err}") from err

        if not content:
            raise HypothesisGenerationFailed("model returned an empty hypothesis")

        # Try to parse JSON from the model
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            # If the model didn't obey perfectly, keep the raw text as the hypothesis
            parsed = {"hypothesis": content}

        if not isinstance(parsed, dict) or not str(parsed.get("hypothesis") or "").strip():
            raise HypothesisGenerationFailed("model response has no hypothesis")

        try:
            priority = float(parsed.get("priority", 0) or 0)
        except (TypeError, ValueError):
            priority = 0.0

        return Hypothesis(
            text=str(parsed["hypothesis"]).strip(),
            change_type=ChangeType.coerce(parsed.get("change_type", "other")),
            priority_score=priority,
        )
