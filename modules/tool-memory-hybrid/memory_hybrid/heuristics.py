"""Text normalization and rule-based memory classification."""

import re
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from .models import EmotionType, MemoryKind

MAX_TEXT_LENGTH = 2000

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[\w']+")
_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b")
_TIME_OR_DATE_RE = re.compile(r"\b\d{1,2}[:/]\d{1,2}\b")

_GREETINGS = frozenset(
    {
        "hi", "hello", "hey", "goodbye", "bye", "thanks", "thank you",
        "ok", "okay", "sure", "yes", "no", "got it",
    }
)

# Words that carry no retrieval signal in a memory query.
_STOP_WORDS = frozenset(
    {
        "a", "about", "all", "am", "an", "and", "any", "are", "as", "at", "be",
        "been", "but", "by", "can", "could", "did", "do", "does", "for", "from",
        "had", "has", "have", "how", "i", "i'm", "if", "in", "into", "is", "it",
        "it's", "me", "my", "of", "on", "or", "our", "so", "that", "the", "their",
        "them", "then", "there", "these", "they", "this", "those", "to", "us",
        "was", "we", "were", "what", "when", "where", "which", "who", "why",
        "will", "with", "would", "you", "your",
        # conversational filler around memory questions
        "anything", "discuss", "discussed", "happen", "happened", "mention",
        "mentioned", "recall", "remember", "say", "said", "something", "talk",
        "talked", "tell", "told",
    }
)

_PREFERENCE_CUES = ("i like", "i prefer", "i love", "i hate", "i enjoy", "my favorite", "my favourite")
_EVENT_CUES = ("yesterday", "today", "tomorrow", "last week", "last night", "went to", "going to")
_PROJECT_CUES = ("working on", "building", "project", "planning to", "goal")
_FACT_CUES = ("my name is", "i am", "i'm", "i live", "i work", "i was born", "my birthday")
_KNOWLEDGE_CUES = ("learned", "discovered", "found out", "understand")
_EMOTION_CUES = ("feel", "feeling", "emotion")

_EMOTION_RULES: tuple[tuple[EmotionType, tuple[str, ...]], ...] = (
    (EmotionType.EXCITED, ("can't wait", "so excited", "excited", "amazing", "thrilled", "🤩", "🎉")),
    (EmotionType.POSITIVE, ("happy", "great", "awesome", "wonderful", "glad", "love it", "😊", "😀")),
    (
        EmotionType.NEGATIVE,
        (
            "sad", "disappointed", "unfortunate", "frustrated", "annoying", "struggling",
            "worried", "nervous", "anxious", "upset", "😢", "😞",
        ),
    ),
    (EmotionType.CURIOUS, ("curious", "wondering", "how does", "what if", "why")),
)

_KIND_WEIGHTS = {
    MemoryKind.FACT: 0.2,
    MemoryKind.PREFERENCE: 0.15,
    MemoryKind.PROJECT: 0.15,
    MemoryKind.EVENT: 0.05,
}

_EMOTION_WEIGHTS = {
    EmotionType.EXCITED: 0.1,
    EmotionType.NEGATIVE: 0.1,
    EmotionType.POSITIVE: 0.05,
}


def clean(text: str) -> str:
    """Strip control characters, collapse whitespace and cap length. Keeps case."""
    text = _CONTROL_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:MAX_TEXT_LENGTH]


def normalize(text: str) -> str:
    """Canonical stored form of a snippet: cleaned and lowercased."""
    return clean(text).lower()


def is_too_short(text: str) -> bool:
    return len(text.split()) < 3


def is_greeting(text: str) -> bool:
    return text.lower().strip(" .!?") in _GREETINGS


def query_terms(text: str) -> list[str]:
    """Content words of a query, in order, without duplicates."""
    terms: list[str] = []
    for word in _WORD_RE.findall(text.lower()):
        word = word.strip("'")
        if len(word) < 2 or word in _STOP_WORDS or word in terms:
            continue
        terms.append(word)
    return terms


@dataclass(frozen=True)
class Classification:
    kind: MemoryKind
    emotion: Optional[EmotionType]
    importance: float


@runtime_checkable
class Classifier(Protocol):
    """Infers kind, emotion and importance for a snippet."""

    def classify(self, text: str) -> Classification: ...


def _contains_any(text: str, cues: tuple[str, ...]) -> bool:
    return any(cue in text for cue in cues)


class HeuristicClassifier:
    """Keyword rules, first match wins.

    Expects cleaned text with original case so capitalized names can count
    toward importance.
    """

    def classify(self, text: str) -> Classification:
        kind = self.classify_kind(text)
        emotion = self.detect_emotion(text)
        return Classification(kind, emotion, self.importance(text, kind, emotion))

    def classify_kind(self, text: str) -> MemoryKind:
        lower = text.lower()
        if _contains_any(lower, _PREFERENCE_CUES):
            return MemoryKind.PREFERENCE
        if _contains_any(lower, _EVENT_CUES) or _TIME_OR_DATE_RE.search(lower):
            return MemoryKind.EVENT
        if _contains_any(lower, _PROJECT_CUES):
            return MemoryKind.PROJECT
        if _contains_any(lower, _FACT_CUES):
            return MemoryKind.FACT
        if _contains_any(lower, _KNOWLEDGE_CUES):
            return MemoryKind.KNOWLEDGE
        if _contains_any(lower, _EMOTION_CUES):
            return MemoryKind.EMOTION
        return MemoryKind.KNOWLEDGE

    def detect_emotion(self, text: str) -> EmotionType:
        lower = text.lower()
        for emotion, cues in _EMOTION_RULES:
            if _contains_any(lower, cues):
                return emotion
        return EmotionType.NEUTRAL

    def importance(self, text: str, kind: MemoryKind, emotion: Optional[EmotionType]) -> float:
        score = 0.5

        words = len(text.split())
        if words > 50:
            score += 0.2
        elif words > 20:
            score += 0.1
        elif words < 5:
            score -= 0.1

        score += _KIND_WEIGHTS.get(kind, 0.0)
        if emotion is not None:
            score += _EMOTION_WEIGHTS.get(emotion, 0.0)

        # named entities
        score += 0.02 * len(_CAPITALIZED_RE.findall(text))

        return min(1.0, max(0.0, score))
