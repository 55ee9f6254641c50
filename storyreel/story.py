"""Multi-turn story generation over one chat session.

The model writes the story in parts. Each part ends with ``CONTINUE`` until
the last one, which ends with ``END``. :class:`ContinuationEngine` drives the
loop and accumulates the cleaned text; chat sessions wrap the OpenAI and
Anthropic async clients and keep the conversation history.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Protocol

import anthropic
import openai

from storyreel.config import Settings
from storyreel.errors import ConfigMissing, ExternalServiceError, MalformedResponse
from storyreel.models import StoryOutcome, StoryState

logger = logging.getLogger(__name__)

CONTINUE_TOKEN = "CONTINUE"
END_TOKEN = "END"

_CONTINUE_RE = re.compile(rf"\b{CONTINUE_TOKEN}\b")
_END_RE = re.compile(rf"\b{END_TOKEN}\b")
_SENTINEL_RE = re.compile(rf"\b(?:{CONTINUE_TOKEN}|{END_TOKEN})\b")
_HEADING_RE = re.compile(r"^\s*#+\s*", re.MULTILINE)

MULTI_PART_RULES = (
    "\n\nSYSTEM RULES:\n"
    f'1. Write in parts. End part with "{CONTINUE_TOKEN}".\n'
    f'2. Finish with "{END_TOKEN}".\n'
    "3. Lang: {language}.\n"
    "4. No markdown headers."
)
ONE_PART_RULES = (
    "\n\nSYSTEM RULES:\n"
    "1. Write COMPLETE story in ONE RESPONSE.\n"
    "2. Lang: {language}.\n"
    "3. No markdown headers."
)
NEXT_PART_MESSAGE = "Great. Write NEXT part. Move plot forward. Lang: {language}."
DEFAULT_SEO_TEMPLATE = "Write YouTube Title, Description, Hashtags. Lang: {language}."

DEFAULT_LENGTH = "25000"

ProgressFn = Callable[[str], None]


def _substitute(template: str, values: dict[str, str]) -> str:
    for key, value in values.items():
        template = re.sub(r"\{" + key + r"\}", lambda _m, v=value: v, template, flags=re.IGNORECASE)
    return template


def build_initial_prompt(
    template: str,
    title: str,
    language: str,
    length: str | None = None,
    project_name: str | None = None,
    one_part: bool = False,
) -> str:
    """Fill the user's story template and append the generation rules."""
    prompt = _substitute(template, {
        "title": title,
        "language": language,
        "length": str(length or DEFAULT_LENGTH),
        "projectName": project_name or title,
    })
    rules = ONE_PART_RULES if one_part else MULTI_PART_RULES
    return prompt + rules.format(language=language)


def clean_chunk(raw: str) -> str:
    """Strip sentinels and markdown emphasis/heading markers from a reply."""
    text = _SENTINEL_RE.sub("", raw)
    text = text.replace("**", "")
    text = _HEADING_RE.sub("", text)
    return text.strip()


def has_continue(raw: str) -> bool:
    return bool(_CONTINUE_RE.search(raw))


def has_end(raw: str) -> bool:
    return bool(_END_RE.search(raw))


class ChatSession(Protocol):
    async def send(self, message: str) -> str: ...


class OpenAIChatSession:
    """Chat-completions session that replays the full history every turn."""

    def __init__(self, api_key: str | None = None, model: str = "gpt-4o-mini",
                 client: Any = None) -> None:
        self.model = model
        self.history: list[dict[str, str]] = []
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    async def send(self, message: str) -> str:
        self.history.append({"role": "user", "content": message})
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=list(self.history),
            )
        except openai.APIStatusError as exc:
            self.history.pop()
            raise ExternalServiceError(
                f"OpenAI HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code, body=exc.body,
            ) from exc
        except openai.APIError as exc:
            self.history.pop()
            raise ExternalServiceError(f"OpenAI request failed: {exc}") from exc

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            self.history.pop()
            raise MalformedResponse("OpenAI returned no choices", payload=response) from exc
        if content is None:
            self.history.pop()
            raise MalformedResponse("OpenAI returned an empty message", payload=response)
        self.history.append({"role": "assistant", "content": content})
        return content


class AnthropicChatSession:
    """Messages-API session; the history alternates user/assistant turns."""

    def __init__(self, api_key: str | None = None, model: str = "claude-sonnet-4-5-20250929",
                 client: Any = None, max_tokens: int = 8192) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.history: list[dict[str, str]] = []
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def send(self, message: str) -> str:
        self.history.append({"role": "user", "content": message})
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=list(self.history),
            )
        except anthropic.APIStatusError as exc:
            self.history.pop()
            raise ExternalServiceError(
                f"Anthropic HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code, body=exc.body,
            ) from exc
        except anthropic.APIError as exc:
            self.history.pop()
            raise ExternalServiceError(f"Anthropic request failed: {exc}") from exc

        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        if not parts:
            self.history.pop()
            raise MalformedResponse("Anthropic returned no text blocks", payload=response)
        content = "".join(parts)
        self.history.append({"role": "assistant", "content": content})
        return content


def make_chat_session(settings: Settings) -> ChatSession:
    """Open a fresh chat session for the configured story provider."""
    provider = settings.story.provider
    if provider == "openai":
        return OpenAIChatSession(api_key=settings.require("openai"), model=settings.story.model)
    if provider == "anthropic":
        return AnthropicChatSession(api_key=settings.require("anthropic"), model=settings.story.model)
    raise ConfigMissing(f"Unknown story provider: {provider!r}")


class ContinuationEngine:
    """Drive the CONTINUE/END loop over one chat session."""

    def __init__(
        self,
        session: ChatSession,
        max_iterations: int = 40,
        turn_delay: float = 2.0,
        part_retries: int = 2,
        one_part: bool = False,
        progress: ProgressFn | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.session = session
        self.max_iterations = max_iterations
        self.turn_delay = turn_delay
        self.part_retries = part_retries
        self.one_part = one_part
        self.progress = progress
        self.cancel = cancel
        self.state = StoryState.WRITING

    def _report(self, message: str) -> None:
        logger.info(message)
        if self.progress:
            self.progress(message)

    async def _send_with_retry(self, message: str, iteration: int) -> str | None:
        """Send one turn; resend up to ``part_retries`` times. None means give up."""
        attempt = 0
        while True:
            try:
                return await self.session.send(message)
            except (ExternalServiceError, MalformedResponse) as exc:
                self.state = StoryState.ERROR_RETRY
                if attempt >= self.part_retries:
                    logger.error("Part %d failed after %d retries: %s", iteration, attempt, exc)
                    return None
                attempt += 1
                logger.warning("Part %d failed (%s), retry %d/%d", iteration, exc, attempt, self.part_retries)
                await asyncio.sleep(self.turn_delay)

    async def run(self, first_message: str, language: str) -> StoryOutcome:
        """Generate until ``END`` or the iteration cap; returns the joined text.

        Raises:
            ExternalServiceError: If no text at all was produced.
        """
        chunks: list[str] = []
        message = first_message
        iteration = 0
        self.state = StoryState.WRITING

        while iteration < self.max_iterations:
            if self.cancel is not None and self.cancel.is_set():
                self.state = StoryState.ABORTED
                self._report("Story generation cancelled.")
                break
            iteration += 1
            self._report(f"Writing part {iteration} (Lang: {language})...")

            raw = await self._send_with_retry(message, iteration)
            if raw is None:
                break
            self.state = StoryState.WRITING

            chunk = clean_chunk(raw)
            if chunk:
                chunks.append(chunk)

            if self.one_part:
                if not has_continue(raw):
                    self.state = StoryState.FINISHED
                    self._report("One-part story finished.")
                    break
            elif has_end(raw):
                self.state = StoryState.FINISHED
                self._report("Story finished by AI.")
                break

            self.state = StoryState.CONTINUE
            message = NEXT_PART_MESSAGE.format(language=language)
            if iteration < self.max_iterations:
                await asyncio.sleep(self.turn_delay)

        if self.state not in (StoryState.FINISHED, StoryState.ABORTED):
            if iteration >= self.max_iterations:
                logger.warning("Iteration cap (%d) reached without %s", self.max_iterations, END_TOKEN)
            self.state = StoryState.ABORTED

        text = "\n\n".join(chunks).strip()
        if not text:
            raise ExternalServiceError("AI produced empty text.")
        return StoryOutcome(text=text, state=self.state, iterations=iteration)

    async def describe(self, seo_template: str | None, title: str, language: str) -> str | None:
        """Ask for title/description/hashtags in the same conversation."""
        self._report("Generating SEO...")
        prompt = _substitute(seo_template or DEFAULT_SEO_TEMPLATE, {"title": title, "language": language})
        try:
            reply = await self.session.send(prompt)
        except (ExternalServiceError, MalformedResponse) as exc:
            logger.warning("SEO generation failed: %s", exc)
            return None
        return reply.strip() or None
