"""
Lexical Overlap Utilities
Token-set overlap measures and keyword extraction

None of these are embedding similarities; they only compare surface tokens.
"""

from typing import List, Set, Iterable
import re


EXPANSION_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should",
}

_NON_WORD = re.compile(r"[^\w\s]")


def _jaccard(tokens1: Set[str], tokens2: Set[str]) -> float:
    union = tokens1 | tokens2
    if not union:
        return 0.0
    return len(tokens1 & tokens2) / len(union)


def lexical_overlap_score(text1: str, text2: str) -> float:
    """
    Jaccard overlap of lowercase whitespace tokens

    Args:
        text1: First text
        text2: Second text

    Returns:
        Overlap in [0, 1]
    """
    return _jaccard(set(text1.lower().split()), set(text2.lower().split()))


def word_tokens(text: str, min_length: int = 3) -> Set[str]:
    """Lowercase words with punctuation removed, at least ``min_length`` long"""
    return {
        word for word in _NON_WORD.sub(" ", text.lower()).split()
        if len(word) >= min_length
    }


def word_overlap_score(text1: str, text2: str) -> float:
    """Jaccard overlap of punctuation-stripped words longer than two characters"""
    return _jaccard(word_tokens(text1), word_tokens(text2))


def query_coverage(query: str, content: str) -> float:
    """Fraction of query whitespace tokens that also occur in the content"""
    query_words = query.lower().split()
    if not query_words:
        return 0.0
    content_words = set(content.lower().split())
    return sum(1 for word in query_words if word in content_words) / len(query_words)


def extract_keywords(text: str) -> List[str]:
    """
    Stop-word filtered keywords in first-seen order

    Args:
        text: Source text

    Returns:
        Unique keywords longer than two characters
    """
    seen = set()
    keywords = []
    for word in _NON_WORD.sub(" ", text.lower()).split():
        if len(word) > 2 and word not in EXPANSION_STOP_WORDS and word not in seen:
            seen.add(word)
            keywords.append(word)
    return keywords


def merge_keywords(*keyword_lists: Iterable[str]) -> List[str]:
    """Union of keyword lists, preserving first-seen order"""
    seen = set()
    merged = []
    for keywords in keyword_lists:
        for keyword in keywords:
            if keyword not in seen:
                seen.add(keyword)
                merged.append(keyword)
    return merged
