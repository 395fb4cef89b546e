"""Content generation - Async LLM seam with deterministic template fallback.

The guidance engine never depends on a language model being available.
Rung 2/3 content may be requested from a ContentGenerator; any failure,
timeout or unparseable response falls back to template content built
from the grounding bundle.

INVARIANTS:
1. build() never raises for generator failures - it falls back
2. The generator call is bounded by a timeout
3. Template content is a pure function of (bundle, rung)
4. Every result records its input hash and fallback reason
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import ContentGenerationError
from .ladder import GuidanceLadder, rung_definition
from .retrieval import UNKNOWN_CONCEPT_DESCRIPTION, RetrievalBundle

logger = logging.getLogger(__name__)

TEMPLATE_MODEL = "template"


@dataclass
class GenerationConfig:
    """Configuration for the content generator."""

    # Model settings
    provider: str = "none"  # "openai", "anthropic", "none"
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 1024

    # API settings
    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None

    # Behavior
    timeout_seconds: float = 25.0
    cache_results: bool = True
    max_cache_entries: int = 512

    @property
    def enabled(self) -> bool:
        return self.provider != "none"

    def params(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout_seconds": self.timeout_seconds,
        }


class FallbackReason(Enum):
    """Why template content was used instead of generated content."""

    NONE = "none"
    NO_GENERATOR = "no_generator"
    TIMEOUT = "timeout"
    PARSE_FAILURE = "parse_failure"
    LLM_ERROR = "llm_error"


def stable_stringify(value: Any) -> str:
    """JSON with sorted keys and no whitespace, identical across runs."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fnv1a32(text: str) -> str:
    """FNV-1a 32-bit hash of a string as 8 hex chars."""
    h = 0x811C9DC5
    for ch in text:
        # Hash UTF-16 code units so non-BMP characters hash as surrogate pairs
        for unit in _utf16_units(ch):
            h ^= unit
            h = (h * 0x01000193) & 0xFFFFFFFF
    return f"{h:08x}"


def _utf16_units(ch: str) -> tuple[int, ...]:
    code = ord(ch)
    if code < 0x10000:
        return (code,)
    code -= 0x10000
    return (0xD800 + (code >> 10), 0xDC00 + (code & 0x3FF))


def create_input_hash(payload: Any) -> str:
    return f"fnv1a32:{fnv1a32(stable_stringify(payload))}"


def get_async_client(config: GenerationConfig):
    """Get an async LLM client for the configured provider.

    Returns:
        AsyncOpenAI or AsyncAnthropic client.
    """
    try:
        if config.provider == "openai":
            from openai import AsyncOpenAI
            api_key = os.environ.get(config.api_key_env) or os.environ.get("OPENAI_API_KEY")
            return AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        elif config.provider == "anthropic":
            import anthropic
            api_key = os.environ.get(config.api_key_env) or os.environ.get("ANTHROPIC_API_KEY")
            return anthropic.AsyncAnthropic(api_key=api_key, base_url=config.base_url)
        else:
            raise ValueError(f"Unknown provider: {config.provider}")
    except ImportError as e:
        logger.error(f"Failed to import LLM client: {e}")
        raise


class ContentGenerator(ABC):
    """Abstract async content generator.

    Implementations turn a prompt into text. They raise
    ContentGenerationError on failure; callers handle fallback.
    """

    @abstractmethod
    async def generate(self, prompt: str, params: dict[str, Any]) -> str:
        """Generate text for a prompt."""

    @abstractmethod
    def get_name(self) -> str:
        """Get generator name for provenance."""


SYSTEM_PROMPT = """You are a patient SQL tutor writing guidance for one learner.

Use ONLY the grounding bundle provided. Never invent sources, tables or columns.
If something is not in the bundle, write "Not found in provided sources."

Respond with JSON: {"content": "<guidance text>"}
"""

RUNG_INSTRUCTIONS = {
    1: "Write a single-sentence micro-hint (max 150 characters). No explanations, no steps.",
    2: (
        "Write a short explanation (max 800 characters) of the learner's error. "
        "Cite at least one source id from retrieved_source_ids, e.g. 'see source sql-engage:12'."
    ),
    3: (
        "Write a reflective note (max 2000 characters) with sections: Concepts, Summary, "
        "Common Mistakes, Example (a minimal SQL example) and Sources (source ids)."
    ),
}


class LLMContentGenerator(ContentGenerator):
    """Content generator backed by the openai or anthropic async SDK.

    Usage:
        generator = LLMContentGenerator(GenerationConfig(provider="openai"))
        text = await generator.generate(prompt, {"temperature": 0})
    """

    def __init__(self, config: GenerationConfig, client: Any = None):
        """Initialize the generator.

        Args:
            config: Generation configuration.
            client: Pre-built SDK client. Created lazily when omitted.
        """
        self.config = config
        self._client = client
        self._call_count = 0

    @property
    def client(self):
        """Lazy-load LLM client."""
        if self._client is None:
            self._client = get_async_client(self.config)
        return self._client

    async def generate(self, prompt: str, params: dict[str, Any]) -> str:
        try:
            text = await self._call_llm(prompt, params)
        except Exception as e:
            raise ContentGenerationError(f"{self.get_name()} request failed: {e}") from e
        self._call_count += 1
        return text or ""

    async def _call_llm(self, prompt: str, params: dict[str, Any]) -> str:
        temperature = params.get("temperature", self.config.temperature)
        max_tokens = params.get("max_tokens", self.config.max_tokens)
        if self.config.provider == "anthropic":
            response = await self.client.messages.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text
        response = await self.client.chat.completions.create(
            model=self.config.model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        )
        return response.choices[0].message.content

    def get_name(self) -> str:
        return f"LLMContentGenerator({self.config.provider}/{self.config.model})"


def create_generator(config: GenerationConfig) -> ContentGenerator | None:
    """Build the configured generator, or None when generation is disabled."""
    if not config.enabled:
        return None
    return LLMContentGenerator(config)


def parse_generated_content(response: str) -> str | None:
    """Extract guidance text from a model response.

    Accepts a JSON object with a "content" field (bare or in a code
    fence) or plain text. Returns None when nothing usable is found.
    """
    if not response or not response.strip():
        return None

    candidates = []
    fence = re.search(r"```(?:json)?\s*\n?({.*?})\s*\n?```", response, re.DOTALL)
    if fence:
        candidates.append(fence.group(1))
    candidates.append(response.strip())

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            content = data.get("content")
            return content.strip() if isinstance(content, str) and content.strip() else None

    if response.lstrip().startswith("{"):
        return None
    return response.strip()


def render_prompt(bundle: RetrievalBundle, rung: int) -> str:
    return "\n".join([
        f"## Task\n{RUNG_INSTRUCTIONS[rung]}",
        "",
        "## Grounding bundle",
        stable_stringify(bundle.to_dict()),
    ])


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def render_template(bundle: RetrievalBundle, rung: int, corpus: Any = None) -> str:
    """Deterministic template content for a rung."""
    anchor = bundle.anchor
    concept = bundle.concept_candidates[0] if bundle.concept_candidates else None
    concept_name = concept.name if concept else UNKNOWN_CONCEPT_DESCRIPTION

    if rung == 1:
        if corpus is not None:
            return corpus.progressive_hint_text(bundle.last_error_subtype_id, 1, anchor)
        return _clip(f"Check the {bundle.last_error_subtype_id} in your query.", 150)

    if rung == 2:
        source = anchor.row_id if anchor else UNKNOWN_CONCEPT_DESCRIPTION
        lines = [
            f"Your query shows a {bundle.last_error_subtype_id} error ({concept_name}).",
            f"Feedback target: {anchor.feedback_target if anchor else UNKNOWN_CONCEPT_DESCRIPTION}",
            f"Goal: {anchor.intended_learning_outcome if anchor else UNKNOWN_CONCEPT_DESCRIPTION}",
        ]
        if bundle.pdf_passages:
            passage = bundle.pdf_passages[0]
            lines.append(f"See textbook page {passage.page} ({passage.chunk_id}).")
        lines.append(f"See source {source}.")
        return _clip("\n".join(lines), rung_definition(2).max_length)

    title = bundle.problem_title or bundle.problem_id
    hints = [f"- [L{h.hint_level}] {_clip(h.hint_text, 120)}" for h in bundle.hint_history]
    lines = [
        f"# Help with {title}",
        "",
        f"Error subtype: {bundle.last_error_subtype_id}",
        f"Concepts: {', '.join(c.concept_id for c in bundle.concept_candidates) or concept_name}",
        "",
        "## Summary",
        anchor.intended_learning_outcome if anchor else UNKNOWN_CONCEPT_DESCRIPTION,
        "",
        "## Common Mistakes",
        f"- {anchor.feedback_target if anchor else UNKNOWN_CONCEPT_DESCRIPTION}",
        *(hints or ["- Not found in provided sources."]),
        "",
        "## Example",
        anchor.query if anchor and anchor.query else "SELECT column_name FROM table_name;",
        "",
        "## Sources",
        *[f"- {source_id}" for source_id in bundle.retrieved_source_ids[:5]],
        "",
        "## Next Steps",
        "1. Re-run a minimal query and validate each clause incrementally.",
        "2. Apply one fix at a time and re-check the same problem.",
    ]
    return _clip("\n".join(lines), rung_definition(3).max_length)


@dataclass(frozen=True)
class GeneratedContent:
    """Content produced for one rung, with provenance."""

    rung: int
    content: str
    input_hash: str
    model: str
    used_fallback: bool
    fallback_reason: FallbackReason = FallbackReason.NONE
    source_ids: tuple[str, ...] = field(default_factory=tuple)
    violations: tuple[str, ...] = field(default_factory=tuple)
    generation_time_ms: int = 0
    from_cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rung": self.rung,
            "content": self.content,
            "input_hash": self.input_hash,
            "model": self.model,
            "used_fallback": self.used_fallback,
            "fallback_reason": self.fallback_reason.value,
            "source_ids": list(self.source_ids),
            "violations": list(self.violations),
            "generation_time_ms": self.generation_time_ms,
            "from_cache": self.from_cache,
        }


class GuidanceContentBuilder:
    """Build rung content, calling the generator for rungs 2 and 3.

    Usage:
        builder = GuidanceContentBuilder(generator, GenerationConfig(timeout_seconds=5))
        content = await builder.build(bundle, rung=2)
    """

    def __init__(
        self,
        generator: ContentGenerator | None = None,
        config: GenerationConfig | None = None,
        ladder: GuidanceLadder | None = None,
    ):
        self._generator = generator
        self._config = config or GenerationConfig()
        self._ladder = ladder or GuidanceLadder()
        self._cache: OrderedDict[str, GeneratedContent] = OrderedDict()

    @property
    def generator(self) -> ContentGenerator | None:
        return self._generator

    def input_hash(self, bundle: RetrievalBundle, rung: int) -> str:
        model = self._generator.get_name() if self._generator else TEMPLATE_MODEL
        return create_input_hash({
            "rung": rung,
            "model": model,
            "params": self._config.params(),
            "bundle": bundle.to_dict(),
        })

    async def build(self, bundle: RetrievalBundle, rung: int) -> GeneratedContent:
        """Content for `rung`; falls back to templates on any generator failure."""
        rung_definition(rung)
        start = time.perf_counter()
        input_hash = self.input_hash(bundle, rung)
        cache_key = f"{bundle.learner_id}::{rung}::{input_hash}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return replace(cached, from_cache=True)

        if rung == 1:
            # Micro-hints always come from the reference ladder texts
            result = self._template_result(bundle, rung, input_hash, FallbackReason.NONE, start)
        elif self._generator is None:
            result = self._template_result(bundle, rung, input_hash, FallbackReason.NO_GENERATOR, start)
        else:
            result = await self._generate(bundle, rung, input_hash, start)

        if self._config.cache_results:
            self._cache[cache_key] = result
            while len(self._cache) > max(self._config.max_cache_entries, 0):
                self._cache.popitem(last=False)
        return result

    async def _generate(
        self,
        bundle: RetrievalBundle,
        rung: int,
        input_hash: str,
        start: float,
    ) -> GeneratedContent:
        prompt = render_prompt(bundle, rung)
        try:
            raw = await asyncio.wait_for(
                self._generator.generate(prompt, self._config.params()),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Content generation timed out after %.1fs for %s/%s rung %d, using template",
                self._config.timeout_seconds, bundle.learner_id, bundle.problem_id, rung,
            )
            return self._template_result(bundle, rung, input_hash, FallbackReason.TIMEOUT, start)
        except ContentGenerationError as e:
            logger.warning("Content generation failed, using template: %s", e)
            return self._template_result(bundle, rung, input_hash, FallbackReason.LLM_ERROR, start)
        except Exception as e:
            logger.warning("Content generator raised %s, using template: %s", type(e).__name__, e)
            return self._template_result(bundle, rung, input_hash, FallbackReason.LLM_ERROR, start)

        content = parse_generated_content(raw)
        if content is None:
            logger.warning("Unparseable generator response for %s/%s rung %d", bundle.learner_id, bundle.problem_id, rung)
            return self._template_result(bundle, rung, input_hash, FallbackReason.PARSE_FAILURE, start)

        violations = self._ladder.validate_content_for_rung(content, rung)
        if violations:
            logger.debug("Generated rung %d content has violations: %s", rung, violations)
        return GeneratedContent(
            rung=rung,
            content=content,
            input_hash=input_hash,
            model=self._generator.get_name(),
            used_fallback=False,
            source_ids=bundle.retrieved_source_ids,
            violations=tuple(violations),
            generation_time_ms=int((time.perf_counter() - start) * 1000),
        )

    def _template_result(
        self,
        bundle: RetrievalBundle,
        rung: int,
        input_hash: str,
        reason: FallbackReason,
        start: float,
    ) -> GeneratedContent:
        content = render_template(bundle, rung, self._ladder.corpus)
        return GeneratedContent(
            rung=rung,
            content=content,
            input_hash=input_hash,
            model=TEMPLATE_MODEL,
            used_fallback=reason != FallbackReason.NONE,
            fallback_reason=reason,
            source_ids=bundle.retrieved_source_ids,
            violations=tuple(self._ladder.validate_content_for_rung(content, rung)),
            generation_time_ms=int((time.perf_counter() - start) * 1000),
        )

    def clear_cache(self) -> None:
        self._cache.clear()
