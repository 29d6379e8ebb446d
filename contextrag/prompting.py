"""
Prompt Assembly Module
Citation-aware RAG prompt assembly with token budget enforcement
"""

from typing import List, Dict, Any, Optional, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
import re
import time
import tiktoken
from loguru import logger

from .chunk import Chunk
from .citations import Citation, generate_citations, resolve_citation_format
from .context import Message, to_message
from .errors import PromptAssemblyError
from .options import PromptOptions
from .prompt_templates import (
    TemplateType,
    TEMPLATES,
    USER_PROMPT_TEMPLATE,
    CONTEXT_HEADER,
    CITATION_SUMMARY_HEADER,
    CONVERSATION_HEADER,
    customize_template,
)
from config.settings import settings


# Template selection, checked in order
TEMPLATE_PATTERNS: List[Tuple[TemplateType, str]] = [
    (TemplateType.DEFINITION, r"(?:what is|define|definition of|meaning of)"),
    (TemplateType.PROCEDURE, r"(?:how to|steps to|process for|procedure)"),
    (TemplateType.COMPARISON, r"(?:difference between|compare|versus|vs)"),
    (TemplateType.LIST, r"(?:list|enumerate|what are)"),
    (TemplateType.TROUBLESHOOTING, r"(?:error|problem|issue|fix|solve)"),
]

CHARS_PER_TOKEN = 4
PREVIEW_TOKENS = 50
MESSAGE_TOKENS = 200

# Budget adjustment
CHUNK_REDUCTION_THRESHOLD = 1000
TOKENS_PER_DROPPED_CHUNK = 500
MIN_CHUNKS_AFTER_REDUCTION = 3
ADJUSTED_CHUNK_TOKENS = 400
MIN_TOKENS_PER_CHUNK = 50
CONVERSATION_TRUNCATION_THRESHOLD = 200
MIN_CONVERSATION_TOKENS = 25
MAX_ADJUSTMENT_ROUNDS = 8


def estimate_tokens(text: str) -> int:
    """Budget estimate: one token per four characters, rounded up"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_content(content: str, max_tokens: int) -> str:
    """
    Truncate to roughly max_tokens, preferring a sentence boundary

    The cut happens at the last period when it falls in the final 30% of the
    allowed characters; otherwise the text is cut hard and marked with "...".
    """
    if not content:
        return ""

    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(content) <= max_chars:
        return content

    truncated = content[:max_chars]
    last_period = truncated.rfind(".")
    if last_period > max_chars * 0.7:
        return truncated[: last_period + 1]

    return truncated + "..."


def truncate_chunk_content(content: str, max_tokens: int) -> str:
    truncated = truncate_content(content, max_tokens)
    if truncated != content and not truncated.endswith("."):
        return truncated + "..."
    return truncated


@dataclass
class Prompt:
    """System and user prompts for the language model"""
    system: str
    user: str

    @property
    def combined(self) -> str:
        return f"{self.system}\n\n{self.user}"

    def to_dict(self) -> Dict[str, str]:
        return {"system": self.system, "user": self.user, "combined": self.combined}


@dataclass
class TokenValidation:
    """Token budget check of an assembled prompt"""
    is_valid: bool
    system_tokens: int
    user_tokens: int
    total_tokens: int
    max_allowed: int
    reserved_for_response: int
    exceeds_by: int
    adjusted: bool = False
    adjustments: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "system_tokens": self.system_tokens,
            "user_tokens": self.user_tokens,
            "total_tokens": self.total_tokens,
            "max_allowed": self.max_allowed,
            "reserved_for_response": self.reserved_for_response,
            "exceeds_by": self.exceeds_by,
            "adjusted": self.adjusted,
            "adjustments": self.adjustments,
        }


@dataclass
class ProcessedChunk:
    """A chunk prepared for prompt inclusion"""
    chunk: Chunk
    index: int
    content: str
    original_content: str
    preview: str
    citation_key: str

    def summary(self, citation: Optional[Citation] = None) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk.chunk_id,
            "source": citation.source if citation else self.chunk.source_title or "Unknown source",
            "page": self.chunk.page_number,
            "relevance_score": self.chunk.relevance_score or 0.0,
            "content_preview": self.original_content[:100] + ("..." if len(self.original_content) > 100 else ""),
        }


@dataclass
class AssembledPrompt:
    """Result of prompt assembly"""
    prompt: Prompt
    citations: List[Citation]
    metadata: Dict[str, Any]
    processed_chunks: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt.to_dict(),
            "citations": [citation.to_dict() for citation in self.citations],
            "metadata": self.metadata,
            "processed_chunks": self.processed_chunks,
        }


class PromptAssembler:
    """
    Assembles RAG prompts from retrieved chunks

    The system prompt is the selected template, the cited context section and
    the recent conversation; the user prompt wraps the raw query. Prompts over
    budget are shrunk by dropping chunks, lowering the per-chunk token cap and
    truncating the conversation, then rebuilt with the standard template.
    """

    def __init__(self, tokenizer_name: Optional[str] = None):
        self.tokenizer_name = tokenizer_name or settings.TOKENIZER_NAME
        self.template_patterns = [
            (template_type, re.compile(pattern, re.IGNORECASE))
            for template_type, pattern in TEMPLATE_PATTERNS
        ]
        try:
            self.tokenizer = tiktoken.get_encoding(self.tokenizer_name)
        except Exception:
            logger.warning("Failed to load tiktoken, using character approximation")
            self.tokenizer = None

    def count_tokens(self, text: str) -> int:
        """Count tokens in text"""
        if self.tokenizer:
            return len(self.tokenizer.encode(text))
        else:
            # Approximate: ~4 chars per token
            return len(text) // 4

    def select_template(self, query: str, chunks: List[Chunk]) -> TemplateType:
        for template_type, pattern in self.template_patterns:
            if pattern.search(query):
                return template_type

        if any(chunk.annotations.get("conversational") for chunk in chunks):
            return TemplateType.CONTEXTUAL

        return TemplateType.STANDARD

    def assemble_rag_prompt(
        self,
        query: str,
        chunks: List[Chunk],
        history: Optional[List[Union[Message, Dict[str, Any]]]] = None,
        options: Union[PromptOptions, Dict[str, Any], None] = None,
    ) -> AssembledPrompt:
        """
        Assemble the complete RAG prompt

        Args:
            query: User question
            chunks: Retrieved chunks
            history: Previous conversation messages
            options: PromptOptions (or a dict of them)

        Returns:
            AssembledPrompt with prompt, citations and metadata
        """
        options = PromptOptions.from_value(options)
        messages = [to_message(message) for message in history or []]
        start_time = time.time()

        logger.info(f"Assembling RAG prompt for query: '{query[:100]}' with {len(chunks)} chunks")

        try:
            template_type = self._resolve_template(options.template_type, query, chunks)
            citation_format = resolve_citation_format(options.citation_format)

            processed = self.process_chunks(chunks, options)
            conversation = self.prepare_conversation(messages, options.max_conversation_messages)
            template = customize_template(
                TEMPLATES[template_type],
                options.query_type,
                len(processed),
                has_conversation=bool(messages),
            )

            citations = generate_citations([p.chunk for p in processed], citation_format)
            context_section = self.assemble_context_section(
                processed, citations, options.include_citation_summary
            )
            prompt = self.assemble_final_prompt(template, context_section, conversation, query)
            validation = self.validate_token_limits(prompt, options)

            if not validation.is_valid:
                logger.warning(f"Prompt exceeds token limit by {validation.exceeds_by} tokens, adjusting")
                prompt, processed, citations, validation = self.fit_to_budget(
                    query, processed, conversation, validation, options
                )
                template_type = TemplateType.STANDARD

            if validation.system_tokens > options.system_prompt_max_length:
                logger.warning(
                    f"System prompt is ~{validation.system_tokens} tokens "
                    f"(soft limit {options.system_prompt_max_length})"
                )

        except Exception as e:
            logger.error(f"Prompt assembly failed: {e}")
            raise PromptAssemblyError(f"Prompt assembly failed: {e}") from e

        assembly_time = time.time() - start_time
        metadata = {
            "template_type": template_type.value,
            "citation_format": citation_format.value,
            "chunks_used": len(processed),
            "citations_generated": len(citations),
            "conversation_turns": len(messages),
            "estimated_tokens": validation.total_tokens,
            "tokenizer_tokens": self.count_tokens(prompt.combined),
            "assembly_time": assembly_time,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "token_validation": validation.to_dict(),
        }

        logger.info(
            f"Prompt assembled in {assembly_time * 1000:.0f}ms: ~{validation.total_tokens} tokens, "
            f"{len(citations)} citations"
        )

        return AssembledPrompt(
            prompt=prompt,
            citations=citations,
            metadata=metadata,
            processed_chunks=[p.summary(c) for p, c in zip(processed, citations)],
        )

    def _resolve_template(self, requested: Optional[str], query: str, chunks: List[Chunk]) -> TemplateType:
        if requested:
            try:
                return TemplateType(requested)
            except ValueError:
                logger.warning(f"Unknown template type '{requested}', selecting automatically")
        return self.select_template(query, chunks)

    def process_chunks(self, chunks: List[Chunk], options: PromptOptions) -> List[ProcessedChunk]:
        """Sort by relevance, optionally filter, and cap each chunk's size"""
        ordered = sorted(chunks, key=lambda c: c.relevance_score or 0.0, reverse=True)

        if options.filter_content:
            ordered = self.filter_chunks(ordered, options)

        processed = []
        for idx, chunk in enumerate(ordered, start=1):
            content = chunk.annotations.get("condensed_content") or chunk.content
            page = chunk.page_number if chunk.page_number is not None else "N/A"
            processed.append(
                ProcessedChunk(
                    chunk=chunk,
                    index=idx,
                    content=truncate_chunk_content(content, options.max_tokens_per_chunk),
                    original_content=content,
                    preview=truncate_content(content, PREVIEW_TOKENS),
                    citation_key=f"{chunk.source_title or chunk.filename or 'Unknown'}_p{page}_{idx}",
                )
            )

        logger.debug(f"Processed {len(processed)} chunks for prompt inclusion")
        return processed

    @staticmethod
    def filter_chunks(chunks: List[Chunk], options: PromptOptions) -> List[Chunk]:
        filtered = list(chunks)

        if options.min_content_length:
            filtered = [c for c in filtered if len(c.content) >= options.min_content_length]

        if options.min_quality_score:
            filtered = [c for c in filtered if c.quality_score >= options.min_quality_score]

        if options.preferred_content_types:
            preferred = set(options.preferred_content_types)
            filtered = (
                [c for c in filtered if c.content_type in preferred]
                + [c for c in filtered if c.content_type not in preferred]
            )

        return filtered

    @staticmethod
    def assemble_context_section(
        processed: List[ProcessedChunk],
        citations: List[Citation],
        include_citation_summary: bool = False,
    ) -> str:
        parts = [CONTEXT_HEADER, ""]

        for idx, (chunk, citation) in enumerate(zip(processed, citations), start=1):
            parts.append(f"[Context {idx}] {citation.formatted}")
            parts.append(chunk.content)
            parts.append("")

        if include_citation_summary and citations:
            parts.append(CITATION_SUMMARY_HEADER)
            sources = list(dict.fromkeys(citation.source for citation in citations))
            parts.extend(f"{idx}. {source}" for idx, source in enumerate(sources, start=1))
            parts.append("")

        return "\n".join(parts)

    @staticmethod
    def prepare_conversation(messages: List[Message], max_messages: int) -> str:
        if not messages or max_messages <= 0:
            return ""

        parts = [CONVERSATION_HEADER]
        for message in messages[-max_messages:]:
            role = "User" if message.role == "user" else "Assistant"
            parts.append(f"{role}: {truncate_content(message.content, MESSAGE_TOKENS)}")
        parts.append("")

        return "\n".join(parts)

    @staticmethod
    def assemble_final_prompt(template: str, context_section: str, conversation: str, query: str) -> Prompt:
        system = "\n".join(part for part in [template, "", context_section, conversation] if part)
        return Prompt(system=system, user=USER_PROMPT_TEMPLATE.format(query=query))

    @staticmethod
    def validate_token_limits(prompt: Prompt, options: PromptOptions) -> TokenValidation:
        system_tokens = estimate_tokens(prompt.system)
        user_tokens = estimate_tokens(prompt.user)
        total = system_tokens + user_tokens
        max_allowed = options.context_window_size - options.reserved_tokens_for_response

        return TokenValidation(
            is_valid=total <= max_allowed,
            system_tokens=system_tokens,
            user_tokens=user_tokens,
            total_tokens=total,
            max_allowed=max_allowed,
            reserved_for_response=options.reserved_tokens_for_response,
            exceeds_by=max(0, total - max_allowed),
        )

    def fit_to_budget(
        self,
        query: str,
        processed: List[ProcessedChunk],
        conversation: str,
        validation: TokenValidation,
        options: PromptOptions,
    ) -> Tuple[Prompt, List[ProcessedChunk], List[Citation], TokenValidation]:
        """
        Shrink the prompt until it fits or nothing more can be removed

        Each round uses the current overage to (1) drop trailing chunks,
        (2) lower the per-chunk token cap, (3) truncate the conversation, then
        rebuilds the prompt with the standard template and re-validates. The
        returned validation always describes the returned prompt.
        """
        chunks = list(processed)
        per_chunk = min(options.max_tokens_per_chunk, ADJUSTED_CHUNK_TOKENS)
        adjustments: List[str] = []

        for _ in range(MAX_ADJUSTMENT_ROUNDS):
            exceeds = validation.exceeds_by
            if exceeds <= 0:
                break
            changed = False

            if exceeds > CHUNK_REDUCTION_THRESHOLD and len(chunks) > MIN_CHUNKS_AFTER_REDUCTION:
                target = max(MIN_CHUNKS_AFTER_REDUCTION, len(chunks) - math.ceil(exceeds / TOKENS_PER_DROPPED_CHUNK))
                adjustments.append(f"reduced chunks {len(chunks)} -> {target}")
                chunks = chunks[:target]
                changed = True

            if chunks:
                cap = max(MIN_TOKENS_PER_CHUNK, per_chunk - math.ceil(exceeds / len(chunks)))
                truncated = [
                    ProcessedChunk(
                        chunk=p.chunk,
                        index=p.index,
                        content=truncate_chunk_content(p.original_content, cap),
                        original_content=p.original_content,
                        preview=p.preview,
                        citation_key=p.citation_key,
                    )
                    for p in chunks
                ]
                if any(new.content != old.content for new, old in zip(truncated, chunks)):
                    adjustments.append(f"truncated chunks to ~{cap} tokens")
                    chunks = truncated
                    changed = True
                per_chunk = cap

            if conversation and (exceeds > CONVERSATION_TRUNCATION_THRESHOLD or not changed):
                budget = max(MIN_CONVERSATION_TOKENS, estimate_tokens(conversation) - exceeds)
                shortened = truncate_content(conversation, budget)
                if shortened != conversation:
                    adjustments.append(f"truncated conversation to ~{budget} tokens")
                    conversation = shortened
                    changed = True

            if not changed and len(chunks) > 1:
                adjustments.append(f"dropped chunk {len(chunks)}")
                chunks = chunks[:-1]
                changed = True

            citations = generate_citations([p.chunk for p in chunks], options.citation_format)
            prompt = self.assemble_final_prompt(
                customize_template(TEMPLATES[TemplateType.STANDARD], options.query_type, len(chunks), bool(conversation)),
                self.assemble_context_section(chunks, citations, options.include_citation_summary),
                conversation,
                query,
            )
            validation = self.validate_token_limits(prompt, options)

            if not changed:
                break

        validation.adjusted = True
        validation.adjustments = adjustments

        if validation.is_valid:
            logger.info(f"Adjusted prompt fits: {validation.total_tokens} tokens")
        else:
            logger.warning(
                f"Prompt still exceeds budget by {validation.exceeds_by} tokens after adjustment"
            )

        return prompt, chunks, citations, validation
