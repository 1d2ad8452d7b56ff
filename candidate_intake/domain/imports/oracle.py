"""
LLM-backed header mapping suggestions.

Only consulted when the synonym heuristics cannot map any header. A single
LLM call is made per attempt; retries and fallback are handled by the
resolver.
"""
import json
import logging
import re
from typing import Any, List, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from candidate_intake.core.config import Settings
from candidate_intake.core.exceptions import OracleResponseException
from candidate_intake.domain.imports.schema_mapper import CANONICAL_FIELDS

logger = logging.getLogger(__name__)


MAPPING_PROMPT_TEMPLATE = """You are a data normalization assistant.

Map these Excel headers to canonical recruitment database fields.

Canonical fields:
{fields}

Rules:
- Map only clear matches
- Use null if unsure
- Output ONLY valid JSON object
- No markdown, no explanation

Headers: {headers}

Output format:
{{
  "Excel Header": "canonical_field",
  ...
}}"""


def build_mapping_prompt(headers: List[str]) -> str:
    fields = "\n".join(f"- {name}" for name in CANONICAL_FIELDS)
    return MAPPING_PROMPT_TEMPLATE.format(fields=fields, headers=json.dumps(headers))


def parse_json_response(content: Any) -> Any:
    """
    Extract the JSON object from an LLM response.

    Tolerates code fences and prose around the object.
    """
    if isinstance(content, list):
        # Anthropic content blocks
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    if not content or not str(content).strip():
        raise OracleResponseException("Empty mapping response.")

    trimmed = str(content).strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", trimmed, re.DOTALL | re.IGNORECASE)
    if fenced:
        trimmed = fenced.group(1).strip()

    candidates = [trimmed]
    match = re.search(r"\{.*\}", trimmed, re.DOTALL)
    if match and match.group(0) != trimmed:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, TypeError, ValueError):
            continue
    raise OracleResponseException("Unable to locate a JSON object in mapping response.")


class AnthropicMappingOracle:
    """Ask Claude for a header -> canonical field mapping."""

    def __init__(self, api_key: str, model: str, timeout: int = 60, llm: Any = None):
        self._llm = llm or ChatAnthropic(
            model=model,
            api_key=api_key,
            temperature=0,
            max_tokens=1024,
            timeout=timeout,
            max_retries=0,  # the resolver owns retry/backoff
        )

    def suggest_mapping(self, headers: List[str]) -> Any:
        response = self._llm.invoke([HumanMessage(content=build_mapping_prompt(headers))])
        return parse_json_response(getattr(response, "content", response))


def build_mapping_oracle(config: Settings) -> Optional[AnthropicMappingOracle]:
    """Return the configured oracle, or None when heuristics-only mode is active."""
    provider = (config.mapping_oracle_provider or "heuristic").strip().lower()
    if provider == "heuristic":
        return None
    if provider != "anthropic":
        logger.warning("Unknown mapping oracle provider '%s'; using heuristics only", provider)
        return None

    api_key = (config.anthropic_api_key or "").strip()
    if not api_key:
        logger.warning("Anthropic mapping oracle requested but ANTHROPIC_API_KEY is not set")
        return None
    return AnthropicMappingOracle(api_key=api_key, model=config.anthropic_model, timeout=config.llm_api_timeout)
