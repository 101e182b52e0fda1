"""
Keyword Query Expander and Missing Item Suggester
LLM-generated asks for keyword searches, and suggestions for asks/offers a
user implies but has not stated.
"""
import json
import re
from typing import Any, Optional, Sequence

import anthropic
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from backend.core.config import settings
from backend.core.exceptions import UpstreamServiceError

from .models import KnowledgeItem, ProfileContext

logger = structlog.get_logger().bind(agent="query_expander")

RETRYABLE_ERRORS = (anthropic.APIConnectionError, anthropic.RateLimitError)


KEYWORD_SYSTEM_PROMPT = """You are an expert at understanding search intent. Generate 3-5 single-sentence asks that represent what someone searching for a keyword might be looking for.

Each ask should be a complete sentence describing what is being sought (resources, people, help, services, tools, information, or opportunities).

Return ONLY a JSON object with a field "asks" containing an array of ask strings."""


SUGGESTION_SYSTEM_PROMPT = (
    "You suggest additional missing asks and offers (non-asks) for a "
    "professional matching system. Respond ONLY with valid JSON."
)


SUGGESTION_PROMPT = """You are helping build a professional matching system.

Given:
- A user's profile description
- A list of their projects (name + description)
- Existing asks (what they are already asking for)
- Existing non-asks (what they already offer: skills, resources, experience)

Task:
- Carefully read the profile, projects, and existing asks/non-asks.
- Identify important missing asks (things they *should* be asking for but didn't state).
- Identify important missing non-asks (skills, resources, or offerings that are implied but not yet listed).

Rules:
- Do NOT repeat any existing asks or non-asks.
- Each ask/non-ask should be a clear, single-sentence statement.
- It's OK if there are no obvious missing items; then return empty arrays.

Return ONLY valid JSON:
{{"asks": ["..."], "nonAsks": ["..."]}}

User profile description:
{description}

User projects:
{projects}

Existing asks:
{asks}

Existing non-asks:
{offers}
"""


def parse_json_object(response_text: str) -> dict[str, Any]:
    """
    Extract a JSON object from an LLM response.

    Handles markdown code fences and leading/trailing prose.

    Raises:
        ValueError: If no JSON object can be parsed.
    """
    text = response_text.strip()
    if text.startswith("```"):
        fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
        if fenced:
            text = fenced.group(1)

    if "{" not in text:
        raise ValueError("No JSON object in response")

    json_str = text[text.index("{"):text.rindex("}") + 1]
    data = json.loads(json_str)
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object, got {type(data).__name__}")
    return data


def clean_statements(values: Any) -> list[str]:
    """Keep non-empty, stripped strings in order, dropping duplicates."""
    if not isinstance(values, list):
        return []
    cleaned = []
    for value in values:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


def _bullet_list(texts: Sequence[str]) -> str:
    return "\n".join(f"- {t}" for t in texts) or "(none)"


class LLMClient:
    """Thin wrapper around the Anthropic messages API."""

    def __init__(self, client: Optional[anthropic.Anthropic] = None, max_tokens: Optional[int] = None):
        self._client = client
        self.max_tokens = max_tokens or settings.llm_max_tokens

    @property
    def client(self) -> anthropic.Anthropic:
        """Lazy-load Anthropic client."""
        if self._client is None:
            if not settings.anthropic_api_key:
                raise UpstreamServiceError("anthropic", "API key not configured")
            self._client = anthropic.Anthropic(api_key=settings.anthropic_api_key)
        return self._client

    @retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def complete_json(self, system: str, prompt: str) -> dict[str, Any]:
        """
        Send one prompt and parse the JSON object in the reply.

        Raises:
            anthropic.APIError: If the API call fails after retries.
            ValueError: If the reply holds no text or no JSON object.
        """
        message = self.client.messages.create(
            model=settings.llm_model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        reply = "".join(
            block.text for block in message.content or []
            if getattr(block, "type", None) == "text"
        )
        if not reply.strip():
            raise ValueError("No text content in response")
        return parse_json_object(reply)


class KeywordQueryExpander:
    """
    Turns a search keyword into 3-5 synthetic asks.

    Failures are logged and produce no asks, so the keyword search simply
    contributes nothing.
    """

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm or LLMClient(max_tokens=500)

    def expand(self, keyword: str) -> list[str]:
        """
        Generate asks that someone searching for `keyword` might mean.

        Args:
            keyword: Free-text search keyword.

        Returns:
            Non-empty ask sentences; empty on failure.
        """
        keyword = (keyword or "").strip()
        if not keyword:
            return []

        try:
            data = self.llm.complete_json(
                KEYWORD_SYSTEM_PROMPT,
                f'Generate asks for someone searching for: "{keyword}"',
            )
        except (anthropic.APIError, UpstreamServiceError, ValueError) as e:
            logger.error("keyword_expansion_failed", keyword=keyword, error=str(e))
            return []

        asks = clean_statements(data.get("asks"))
        logger.info("keyword_expanded", keyword=keyword, asks_generated=len(asks))
        return asks


class MissingItemSuggester:
    """
    Suggests asks and offers implied by a profile but not yet stated.

    Suggestions already present (by exact text) are dropped; the rest
    become synthetic knowledge items with no id and no embedding.
    """

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm or LLMClient(max_tokens=600)

    def _build_prompt(
        self,
        profile: ProfileContext,
        asks: Sequence[KnowledgeItem],
        offers: Sequence[KnowledgeItem],
    ) -> str:
        return SUGGESTION_PROMPT.format(
            description=profile.description or "(none)",
            projects="\n\n".join(profile.project_summaries) or "(none)",
            asks=_bullet_list([a.text for a in asks]),
            offers=_bullet_list([o.text for o in offers]),
        )

    def suggest(
        self,
        profile: ProfileContext,
        asks: Sequence[KnowledgeItem],
        offers: Sequence[KnowledgeItem],
    ) -> tuple[list[KnowledgeItem], list[KnowledgeItem]]:
        """
        Propose missing asks and offers.

        Args:
            profile: Profile description and related project summaries.
            asks: The user's existing asks.
            offers: The user's existing offers.

        Returns:
            (new asks, new offers) as synthetic items; empty on failure.
        """
        try:
            data = self.llm.complete_json(
                SUGGESTION_SYSTEM_PROMPT,
                self._build_prompt(profile, asks, offers),
            )
        except (anthropic.APIError, UpstreamServiceError, ValueError) as e:
            logger.error("missing_item_suggestion_failed", error=str(e))
            return [], []

        existing_asks = {a.text for a in asks}
        existing_offers = {o.text for o in offers}

        new_asks = [
            KnowledgeItem(text=t, is_ask=True)
            for t in clean_statements(data.get("asks"))
            if t not in existing_asks
        ]
        new_offers = [
            KnowledgeItem(text=t, is_ask=False)
            for t in clean_statements(data.get("nonAsks"))
            if t not in existing_offers
        ]

        logger.info(
            "missing_items_suggested",
            asks_added=len(new_asks),
            offers_added=len(new_offers),
        )

        return new_asks, new_offers
