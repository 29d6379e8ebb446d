"""
Content Type Analysis Module
Heuristic classification of chunk content (table of contents, instructions,
definitions, examples, FAQ) and its usefulness for answering questions
"""

from enum import Enum
from typing import List, Dict, Any, Optional, Pattern, Tuple
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
import re
from loguru import logger


class ContentType(str, Enum):
    """Detected content families"""
    TABLE_OF_CONTENTS = "table_of_contents"
    INSTRUCTIONS = "instructions"
    DEFINITIONS = "definitions"
    EXAMPLES = "examples"
    FAQ = "faq"
    TEXT = "text"


# Store-side content_type tags that name one of the detected families
CONTENT_TYPE_ALIASES: Dict[str, ContentType] = {
    "table_of_contents": ContentType.TABLE_OF_CONTENTS,
    "table-of-contents": ContentType.TABLE_OF_CONTENTS,
    "tableofcontents": ContentType.TABLE_OF_CONTENTS,
    "toc": ContentType.TABLE_OF_CONTENTS,
    "instructions": ContentType.INSTRUCTIONS,
    "instruction": ContentType.INSTRUCTIONS,
    "procedure": ContentType.INSTRUCTIONS,
    "definitions": ContentType.DEFINITIONS,
    "definition": ContentType.DEFINITIONS,
    "examples": ContentType.EXAMPLES,
    "example": ContentType.EXAMPLES,
    "faq": ContentType.FAQ,
}


def normalize_content_type(tag: Optional[str]) -> Optional[ContentType]:
    """Map a store content_type tag to a ContentType, None if it names no family"""
    if not tag:
        return None
    return CONTENT_TYPE_ALIASES.get(tag.strip().lower())


# Patterns are matched against "heading content" lowercased; flags are kept per
# pattern so the uppercase classes only ever match the raw content checks.
TOC_PATTERNS: List[Tuple[str, int]] = [
    (r"table\s+of\s+contents", re.IGNORECASE),
    (r"^#\s*table\s+of\s+contents", re.IGNORECASE),
    (r"^\s*\d+\s+[A-Z][^.]*\s+\d+\s*$", re.MULTILINE),    # "1 Introduction 3"
    (r"^\s*[A-Z][^.]*\s+\d+\s*$", re.MULTILINE),          # "Introduction 3"
    (r"^\s*creating\s+[^.]*\s+\d+\s*$", re.IGNORECASE | re.MULTILINE),
]
TOC_INDICATORS = [
    "table of contents", "contents", "overview", "introduction 3",
    "step 1:", "step 2:", "step 3:",
]
TOC_NUMBER_RATIO = 0.15
PAGE_NUMBER_PATTERN = re.compile(r"\s+\d+\s*$")

INSTRUCTION_PATTERNS: List[Tuple[str, int]] = [
    (r"to\s+start\s+the\s+.*\s+wizard", re.IGNORECASE),
    (r"click\s+the\s+.*\s+button", re.IGNORECASE),
    (r"follow\s+these\s+steps", re.IGNORECASE),
    (r"step\s+\d+:\s*[^0-9]*[a-z]", re.IGNORECASE),
    (r"step\s+\d+:\s*fund\s+details", re.IGNORECASE),
    (r"step\s+\d+:\s*hierarchy", re.IGNORECASE),
    (r"creating\s+a\s+fund\s+update", re.IGNORECASE),
    (r"fund\s+creation\s+wizard", re.IGNORECASE),
    (r"details\s+common\s+to\s+all", re.IGNORECASE),
    (r"specific\s+to\s+.*:", re.IGNORECASE),
    (r"•\s*[A-Z][^:]*:", re.IGNORECASE),
    (r"name:\s*this\s+will", re.IGNORECASE),
    (r"type:\s*choose", re.IGNORECASE),
    (r"base\s+unit:", re.IGNORECASE),
    (r"reporting\s+currency:", re.IGNORECASE),
]
INSTRUCTION_INDICATORS = [
    "to start the", "click the", "button in the", "details common to all",
    "specific to", "step 1: fund details", "step 2: hierarchy",
    "fund creation wizard", "creating a fund update", "name: this will",
    "type: choose", "base unit:", "reporting currency:", "open date:",
    "close date:", "walkthrough contains", "hovering over a term",
]
ACTION_WORDS = [
    "click", "select", "choose", "enter", "fill", "complete",
    "navigate", "access", "open", "close", "save", "create",
    "start", "begin", "proceed", "continue", "follow", "perform",
]
FIELD_DESCRIPTION_PATTERN = re.compile(r"[A-Za-z\s]+:\s*[A-Z][^.]*\.")
STEP_PATTERN = re.compile(r"step\s+\d+", re.IGNORECASE)

DEFINITION_PATTERNS: List[Tuple[str, int]] = [
    (r"^[A-Z][^:]*:\s*[A-Z]", re.MULTILINE),              # "Term: Definition"
    (r"is\s+defined\s+as", re.IGNORECASE),
    (r"refers\s+to", re.IGNORECASE),
    (r"means\s+that", re.IGNORECASE),
    (r"can\s+be\s+described\s+as", re.IGNORECASE),
]
DEFINITION_INDICATORS = [
    "is defined as", "refers to", "means that", "can be described as",
    "definition", "glossary",
]

EXAMPLE_PATTERNS: List[Tuple[str, int]] = [
    (r"for\s+example", re.IGNORECASE),
    (r"example:", re.IGNORECASE),
    (r"such\s+as", re.IGNORECASE),
    (r"e\.g\.", re.IGNORECASE),
    (r"i\.e\.", re.IGNORECASE),
]
EXAMPLE_INDICATORS = ["for example", "example:", "such as", "e.g.", "i.e."]

FAQ_PATTERNS: List[Tuple[str, int]] = [
    (r"frequently\s+asked\s+questions", re.IGNORECASE),
    (r"^q:", re.IGNORECASE | re.MULTILINE),
    (r"^a:", re.IGNORECASE | re.MULTILINE),
    (r"^question:", re.IGNORECASE | re.MULTILINE),
    (r"^answer:", re.IGNORECASE | re.MULTILINE),
]
FAQ_INDICATORS = ["frequently asked", "q:", "a:", "question:", "answer:"]

POSITIVE_INSTRUCTIONAL_INDICATORS = [
    "step-by-step", "detailed", "comprehensive", "complete",
    "walkthrough", "guide", "tutorial", "instructions",
    "procedure", "process", "method", "approach",
]
NEGATIVE_INSTRUCTIONAL_INDICATORS = [
    "see page", "refer to", "mentioned above", "listed below",
    "table of contents", "index", "overview only",
]

# Content that is always instructional regardless of other scores
FORCED_INSTRUCTION_MARKERS = ["step 1: fund details", "step 2: hierarchy", "fund creation wizard"]


def _compile(patterns: List[Tuple[str, int]]) -> List[Pattern]:
    return [re.compile(pattern, flags) for pattern, flags in patterns]


@dataclass
class TypeSignal:
    """Score and evidence for one content family"""
    score: float = 0.0
    detected: bool = False
    matches: List[str] = field(default_factory=list)
    step_count: int = 0
    action_word_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "detected": self.detected,
            "matches": self.matches,
            "step_count": self.step_count,
            "action_word_count": self.action_word_count,
        }


@dataclass
class ContentAnalysis:
    """Classification of a chunk's content"""
    content_type: ContentType = ContentType.TEXT
    confidence: float = 0.5
    quality_score: float = 0.5
    instructional_value: float = 0.5
    is_table_of_contents: bool = False
    is_instructional: bool = False
    is_definition: bool = False
    is_example: bool = False
    is_faq: bool = False
    signals: Dict[ContentType, TypeSignal] = field(default_factory=dict)
    characteristics: Dict[str, Any] = field(default_factory=dict)

    @property
    def step_count(self) -> int:
        signal = self.signals.get(ContentType.INSTRUCTIONS)
        return signal.step_count if signal else 0

    @property
    def action_word_count(self) -> int:
        signal = self.signals.get(ContentType.INSTRUCTIONS)
        return signal.action_word_count if signal else 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "content_type": self.content_type.value,
            "confidence": self.confidence,
            "quality_score": self.quality_score,
            "instructional_value": self.instructional_value,
            "is_table_of_contents": self.is_table_of_contents,
            "is_instructional": self.is_instructional,
            "is_definition": self.is_definition,
            "is_example": self.is_example,
            "is_faq": self.is_faq,
            "signals": {
                content_type.value: signal.to_dict()
                for content_type, signal in self.signals.items()
            },
            "characteristics": self.characteristics,
        }


class ContentClassifier(ABC):
    """
    Classifier interface for chunk content

    The heuristic analyzer below can be replaced by a trained model without
    changing the scorer.
    """

    @abstractmethod
    def classify(
        self, content: str, heading: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> ContentAnalysis:
        """Classify chunk content"""
        pass


class ContentTypeAnalyzer(ContentClassifier):
    """
    Pattern and indicator based content analyzer

    Each family accumulates a score from regex patterns, literal indicators
    and a few structural signals (page-number lines, step markers, action
    words). The primary type prefers instructions over table of contents.
    """

    def __init__(self):
        self.toc_patterns = _compile(TOC_PATTERNS)
        self.instruction_patterns = _compile(INSTRUCTION_PATTERNS)
        self.definition_patterns = _compile(DEFINITION_PATTERNS)
        self.example_patterns = _compile(EXAMPLE_PATTERNS)
        self.faq_patterns = _compile(FAQ_PATTERNS)

    def classify(
        self, content: str, heading: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> ContentAnalysis:
        """
        Analyze content type and characteristics

        Args:
            content: Chunk content
            heading: Chunk heading (optional)
            metadata: Chunk metadata (unused by the heuristics)

        Returns:
            ContentAnalysis (a plain text analysis with low confidence on failure)
        """
        try:
            return self._analyze(content or "", heading or "")
        except Exception as e:
            logger.error(f"Content type analysis failed: {e}")
            return ContentAnalysis(content_type=ContentType.TEXT, confidence=0.1)

    def _analyze(self, content: str, heading: str) -> ContentAnalysis:
        full_text = f"{heading} {content}".lower()
        content_length = len(content)
        word_count = len(content.split())

        signals = {
            ContentType.TABLE_OF_CONTENTS: self._score_table_of_contents(full_text, content),
            ContentType.INSTRUCTIONS: self._score_instructions(full_text, content),
            ContentType.DEFINITIONS: self._score_family(
                full_text, self.definition_patterns, DEFINITION_INDICATORS, 0.3, 0.2, 0.4
            ),
            ContentType.EXAMPLES: self._score_family(
                full_text, self.example_patterns, EXAMPLE_INDICATORS, 0.3, 0.25, 0.4
            ),
            ContentType.FAQ: self._score_family(
                full_text, self.faq_patterns, FAQ_INDICATORS, 0.4, 0.3, 0.5
            ),
        }

        analysis = ContentAnalysis(
            is_table_of_contents=signals[ContentType.TABLE_OF_CONTENTS].detected,
            is_instructional=signals[ContentType.INSTRUCTIONS].detected,
            is_definition=signals[ContentType.DEFINITIONS].detected,
            is_example=signals[ContentType.EXAMPLES].detected,
            is_faq=signals[ContentType.FAQ].detected,
            signals=signals,
        )
        analysis.content_type = self._primary_content_type(signals, content)
        analysis.instructional_value = self._instructional_value(analysis, full_text, content_length)
        analysis.quality_score = self._quality_score(analysis, content_length, word_count)
        analysis.confidence = self._confidence(signals)
        analysis.characteristics = {
            "content_length": content_length,
            "word_count": word_count,
            "avg_words_per_sentence": self._avg_words_per_sentence(content, word_count),
            "has_action_words": any(word in full_text for word in ACTION_WORDS),
            "has_field_descriptions": bool(FIELD_DESCRIPTION_PATTERN.search(content)),
            "has_page_numbers": bool(PAGE_NUMBER_PATTERN.search(content)),
            "structural_complexity": self._structural_complexity(content),
        }

        return analysis

    def _score_table_of_contents(self, full_text: str, content: str) -> TypeSignal:
        signal = self._score_family(full_text, self.toc_patterns, TOC_INDICATORS, 0.3, 0.2, 1.0)

        numbers = re.findall(r"\d+", content)
        words = max(len(content.split()), 1)
        if len(numbers) / words > TOC_NUMBER_RATIO:
            signal.score += 0.4
            signal.matches.append("high_number_ratio")

        lines = content.split("\n")
        page_number_lines = sum(1 for line in lines if PAGE_NUMBER_PATTERN.search(line.strip()))
        if page_number_lines > len(lines) * 0.3:
            signal.score += 0.5
            signal.matches.append("page_number_pattern")

        short_numbered = sum(
            1 for line in lines
            if len(line.strip()) < 50 and re.search(r"\d+", line.strip())
        )
        if short_numbered > len(lines) * 0.4:
            signal.score += 0.3
            signal.matches.append("short_lines_with_numbers")

        signal.detected = signal.score > 0.6
        signal.score = min(signal.score, 1.0)
        return signal

    def _score_instructions(self, full_text: str, content: str) -> TypeSignal:
        signal = self._score_family(
            full_text, self.instruction_patterns, INSTRUCTION_INDICATORS, 0.25, 0.15, 1.0
        )

        action_word_count = sum(1 for word in ACTION_WORDS if word in full_text)
        if action_word_count > 2:
            signal.score += min(action_word_count * 0.1, 0.4)
            signal.matches.append(f"action_words_{action_word_count}")

        if FIELD_DESCRIPTION_PATTERN.search(content):
            signal.score += 0.3
            signal.matches.append("field_descriptions")

        step_count = len(STEP_PATTERN.findall(content))
        if step_count > 1:
            signal.score += min(step_count * 0.15, 0.5)
            signal.matches.append(f"steps_{step_count}")

        signal.detected = signal.score > 0.5
        signal.score = min(signal.score, 1.0)
        signal.step_count = step_count
        signal.action_word_count = action_word_count
        return signal

    @staticmethod
    def _score_family(
        full_text: str,
        patterns: List[Pattern],
        indicators: List[str],
        pattern_weight: float,
        indicator_weight: float,
        detection_threshold: float,
    ) -> TypeSignal:
        signal = TypeSignal()
        for pattern in patterns:
            if pattern.search(full_text):
                signal.score += pattern_weight
                signal.matches.append(pattern.pattern)
        for indicator in indicators:
            if indicator in full_text:
                signal.score += indicator_weight
                signal.matches.append(indicator)

        signal.detected = signal.score > detection_threshold
        signal.score = min(signal.score, 1.0)
        return signal

    @staticmethod
    def _primary_content_type(signals: Dict[ContentType, TypeSignal], content: str) -> ContentType:
        scores = {content_type: signal.score for content_type, signal in signals.items()}
        max_score = max(scores.values())

        if max_score < 0.3:
            return ContentType.TEXT

        content_lower = content.lower()
        if any(marker in content_lower for marker in FORCED_INSTRUCTION_MARKERS) or (
            "step 1:" in content_lower and "step 2:" in content_lower
        ):
            return ContentType.INSTRUCTIONS

        # Instructions outrank table of contents
        if scores[ContentType.INSTRUCTIONS] >= 0.4:
            return ContentType.INSTRUCTIONS
        if scores[ContentType.DEFINITIONS] >= 0.5:
            return ContentType.DEFINITIONS
        if scores[ContentType.FAQ] >= 0.5:
            return ContentType.FAQ
        if scores[ContentType.EXAMPLES] >= 0.4:
            return ContentType.EXAMPLES
        if scores[ContentType.TABLE_OF_CONTENTS] >= 0.6:
            return ContentType.TABLE_OF_CONTENTS

        return next(content_type for content_type, score in scores.items() if score == max_score)

    @staticmethod
    def _instructional_value(analysis: ContentAnalysis, full_text: str, content_length: int) -> float:
        value = 0.5

        if analysis.is_instructional:
            value += 0.4
        if analysis.is_table_of_contents:
            value -= 0.6
        if analysis.is_example and analysis.is_instructional:
            value += 0.2
        if content_length > 1000:
            value += 0.1
        if analysis.step_count > 1:
            value += min(analysis.step_count * 0.05, 0.2)

        value += 0.05 * sum(1 for term in POSITIVE_INSTRUCTIONAL_INDICATORS if term in full_text)
        value -= 0.1 * sum(1 for term in NEGATIVE_INSTRUCTIONAL_INDICATORS if term in full_text)

        return max(0.0, min(1.0, value))

    @staticmethod
    def _quality_score(analysis: ContentAnalysis, content_length: int, word_count: int) -> float:
        quality = 0.5

        if content_length > 500:
            quality += 0.1
        if content_length > 1500:
            quality += 0.1
        if content_length < 100:
            quality -= 0.2

        if word_count > 100:
            quality += 0.05
        if word_count > 300:
            quality += 0.05

        if analysis.is_instructional:
            quality += 0.2
        if analysis.is_definition:
            quality += 0.1
        if analysis.is_example:
            quality += 0.1
        if analysis.is_table_of_contents:
            quality -= 0.3

        return max(0.0, min(1.0, quality))

    @staticmethod
    def _confidence(signals: Dict[ContentType, TypeSignal]) -> float:
        scores = [signal.score for signal in signals.values()]
        max_score = max(scores)
        avg_score = sum(scores) / len(scores)

        if max_score > 0.8:
            return 0.9
        if max_score > 0.6:
            return 0.8
        if max_score > 0.4:
            return 0.7
        if max_score - avg_score < 0.2:
            return 0.4
        return 0.6

    @staticmethod
    def _avg_words_per_sentence(content: str, word_count: int) -> float:
        sentences = [s for s in re.split(r"[.!?]+", content) if s.strip()]
        return word_count / len(sentences) if sentences else 0.0

    @staticmethod
    def _structural_complexity(content: str) -> int:
        bullets = content.count("•")
        numbered = len(re.findall(r"^\s*\d+\.", content, re.MULTILINE))
        headings = len(re.findall(r"^#+\s", content, re.MULTILINE))
        return bullets + numbered + headings


def apply_content_type_tag(analysis: ContentAnalysis, tag: Optional[str]) -> ContentAnalysis:
    """
    Let a store-assigned content_type tag override the detected primary type

    The flags of the tagged family are set so downstream instructional and
    table-of-contents rules see a consistent picture.
    """
    tagged = normalize_content_type(tag)
    if tagged is None:
        return analysis

    analysis.content_type = tagged
    if tagged == ContentType.TABLE_OF_CONTENTS:
        analysis.is_table_of_contents = True
        analysis.is_instructional = False
        analysis.instructional_value = max(0.0, min(analysis.instructional_value, 0.5) - 0.6)
    elif tagged == ContentType.INSTRUCTIONS:
        analysis.is_instructional = True
        analysis.is_table_of_contents = False
        analysis.instructional_value = max(analysis.instructional_value, 0.9)
    elif tagged == ContentType.DEFINITIONS:
        analysis.is_definition = True
    elif tagged == ContentType.EXAMPLES:
        analysis.is_example = True
    elif tagged == ContentType.FAQ:
        analysis.is_faq = True

    return analysis
