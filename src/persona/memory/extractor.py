"""
Fragment extraction

Scans a conversational turn and returns the spans worth remembering as
MemoryFragment candidates. No embeddings are attached and storage is never
touched; the caller decides what to persist.

Memory-worthiness is a lexical score in [0, 1]. Each signal present in a span
adds its weight once, and the sum is capped at 1.0:

    first-person reference (I, my, we, our...)        0.30
    relationships, family and pets                     0.25
    life events and time anchors                       0.25
    preferences and feelings                           0.20
    proper name (capitalised word mid-span)            0.15
    work, home and origin                              0.15

A span needs the caller's extraction_threshold (default 0.5) to become a
candidate, so a first-person statement needs at least one more signal.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from persona.core.config import config
from persona.memory.models import ConversationTurn, MemoryFragment, Speaker, require_tenant

logger = structlog.get_logger()


_SPAN_BOUNDARY = re.compile(r"(?<=[.!?;])\s+|\n+")


def _words(*terms: str) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(terms) + r")\b", re.IGNORECASE)


@dataclass(frozen=True)
class Signal:
    name: str
    weight: float
    pattern: Optional[re.Pattern] = None


SIGNALS = (
    Signal("first_person", 0.30, _words(
        r"i", r"i'm", r"i've", r"i'd", r"i'll", r"me", r"my", r"mine", r"myself",
        r"we", r"we're", r"our", r"ours", r"us",
    )),
    Signal("relationship", 0.25, _words(
        r"mom", r"mother", r"dad", r"father", r"parents?", r"sister", r"brother",
        r"siblings?", r"son", r"daughter", r"kids?", r"children", r"child",
        r"grand(?:mother|father|ma|pa|parents?)", r"aunt", r"uncle", r"cousin",
        r"wife", r"husband", r"spouse", r"partner", r"boyfriend", r"girlfriend",
        r"fianc[eé]e?", r"friends?", r"best friend", r"family",
        r"dog", r"cat", r"pets?", r"puppy", r"kitten", r"horse",
    )),
    Signal("life_event", 0.25, _words(
        r"born", r"grew up", r"raised", r"moved", r"married", r"divorced",
        r"engaged", r"graduated", r"retired", r"passed away", r"died",
        r"lost", r"broke up", r"pregnant", r"birthday", r"anniversary",
        r"wedding", r"funeral", r"diagnosed",
        r"last (?:year|month|week|spring|summer|fall|autumn|winter)",
        r"next (?:year|month|week|spring|summer|fall|autumn|winter)",
        r"years? ago", r"when i was", r"since", r"childhood",
        r"(?:19|20)\d{2}",
    )),
    Signal("preference", 0.20, _words(
        r"love", r"loves", r"loved", r"like", r"likes", r"enjoy", r"enjoys",
        r"hate", r"hates", r"prefer", r"favou?rite", r"miss", r"missed",
        r"afraid", r"scared", r"worried", r"proud", r"happy", r"sad",
        r"hope", r"dream", r"allergic", r"can't stand",
    )),
    Signal("proper_name", 0.15),
    Signal("work_home", 0.15, _words(
        r"work", r"works", r"job", r"career", r"boss", r"company", r"office",
        r"school", r"college", r"university", r"study", r"studying",
        r"live", r"lives", r"living", r"home", r"house", r"apartment",
        r"hometown", r"from",
    )),
)

# Capitalised words that are not names
_NOT_NAMES = {"I", "I'm", "I've", "I'd", "I'll", "OK", "Okay"}
_NAME_TOKEN = re.compile(r"\b[A-Z][a-z]+(?:'[a-z]+)?\b")

_TONES = (
    ("positive", _words(r"love\w*", r"happy", r"happier", r"excited")),
    ("negative", _words(r"sad", r"sadder", r"worried", r"upset")),
    ("anxious", _words(r"nervous", r"anxious", r"scared")),
)


def split_spans(text: str) -> List[str]:
    """Sentences and semicolon clauses, stripped, blanks dropped"""
    return [span.strip() for span in _SPAN_BOUNDARY.split(text) if span and span.strip()]


def _has_proper_name(span: str) -> bool:
    for match in _NAME_TOKEN.finditer(span):
        if match.start() == 0 or match.group() in _NOT_NAMES:
            continue
        return True
    return False


def score_span(span: str) -> float:
    """Memory-worthiness of one span in [0, 1]"""
    score = 0.0
    for signal in SIGNALS:
        if signal.pattern is None:
            hit = _has_proper_name(span)
        else:
            hit = signal.pattern.search(span) is not None
        if hit:
            score += signal.weight
    return round(min(score, 1.0), 4)


def detect_emotional_tone(text: str) -> str:
    """positive, negative, anxious or neutral (first matching keyword group wins)"""
    for tone, pattern in _TONES:
        if pattern.search(text):
            return tone
    return "neutral"


class FragmentExtractor:
    """
    Turn -> memory candidates

    Usage:
        extractor = FragmentExtractor()
        candidates = extractor.extract("My dog Max passed away last spring", "avatar-1", "user-1")
    """

    def __init__(self, extraction_threshold: Optional[float] = None):
        self.extraction_threshold = self._check_threshold(
            config.MEMORY_EXTRACTION_THRESHOLD if extraction_threshold is None else extraction_threshold
        )

    @staticmethod
    def _check_threshold(threshold: float) -> float:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"extraction_threshold must be in [0, 1], got {threshold}")
        return threshold

    def extract(self,
                turn_text: str,
                avatar_id: str,
                user_id: str,
                context: Optional[Dict[str, Any]] = None,
                extraction_threshold: Optional[float] = None,
                timestamp: Optional[datetime] = None) -> List[MemoryFragment]:
        """
        Extract candidates from raw text spoken by the user

        A ConversationTurn is created for the text so every candidate still
        references the turn it came from.
        """
        require_tenant(avatar_id, user_id)
        if not turn_text or not turn_text.strip():
            return []

        turn_kwargs = {"timestamp": timestamp} if timestamp else {}
        turn = ConversationTurn(
            speaker=Speaker.USER,
            text=turn_text,
            avatar_id=avatar_id,
            user_id=user_id,
            **turn_kwargs,
        )
        return self.extract_turn(turn, context=context, extraction_threshold=extraction_threshold)

    def extract_turn(self,
                     turn: ConversationTurn,
                     context: Optional[Dict[str, Any]] = None,
                     extraction_threshold: Optional[float] = None) -> List[MemoryFragment]:
        threshold = self.extraction_threshold if extraction_threshold is None \
            else self._check_threshold(extraction_threshold)

        tone = detect_emotional_tone(turn.text)
        fragment_context = dict(context or {})
        fragment_context["emotional_tone"] = tone
        fragment_context["speaker"] = turn.speaker.value

        candidates = []
        spans = split_spans(turn.text)
        for span in spans:
            score = score_span(span)
            if score < threshold:
                continue
            candidates.append(MemoryFragment(
                text=span,
                avatar_id=turn.avatar_id,
                user_id=turn.user_id,
                score=score,
                extracted_from=turn,
                created_at=turn.timestamp,
                conversation_context=dict(fragment_context),
            ))

        logger.debug("extractor.completed",
                     avatar_id=turn.avatar_id,
                     user_id=turn.user_id,
                     spans=len(spans),
                     candidates=len(candidates),
                     threshold=threshold,
                     emotional_tone=tone)
        return candidates
