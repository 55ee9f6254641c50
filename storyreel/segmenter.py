"""Sentence-bounded text splitting for scene prompts and TTS requests."""

from __future__ import annotations

import re

from storyreel.models import ScenePrompt

# A run of non-terminators plus its trailing terminators, or a bare terminator run.
_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?\n]*|[.!?\n]+")


def split_sentences(text: str) -> list[str]:
    """Split on ``. ! ?`` and newlines; the pieces concatenate back to ``text``."""
    return _SENTENCE_RE.findall(text)


def split_text_safe(text: str, max_length: int = 2500) -> list[str]:
    """Greedily pack whole sentences into chunks of at most ``max_length`` chars.

    A single sentence longer than the budget is passed through as its own chunk.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    chunks: list[str] = []
    current = ""
    for sentence in split_sentences(text):
        if current and len(current) + len(sentence) > max_length:
            chunks.append(current)
            current = sentence
        else:
            current += sentence
    if current:
        chunks.append(current)
    return chunks


def segment_prompts(text: str, target_size: int = 2000) -> list[ScenePrompt]:
    """Split narration into scene chunks sized as close to ``target_size`` as possible.

    Sentences are never split. When the next sentence would overshoot, it is
    kept in the current chunk only if that lands nearer the target. The last
    chunk takes whatever remains.
    """
    if target_size <= 0:
        raise ValueError("target_size must be positive")
    raw: list[str] = []
    current = ""
    for sentence in split_sentences(text):
        if not current:
            current = sentence
            continue
        combined = len(current) + len(sentence)
        if combined <= target_size:
            current += sentence
        elif abs(combined - target_size) < abs(len(current) - target_size):
            raw.append(current + sentence)
            current = ""
        else:
            raw.append(current)
            current = sentence
    if current.strip() or not raw:
        raw.append(current)
    elif current:
        raw[-1] += current

    texts = [chunk.strip() for chunk in raw if chunk.strip()]
    return [ScenePrompt(id=i, text=t) for i, t in enumerate(texts, 1)]
