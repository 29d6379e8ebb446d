#!/usr/bin/env python3
"""
Corpus Query Script
Load a JSON chunk corpus, run contextual retrieval and assemble the RAG prompt
"""

import sys
import json
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import settings
from contextrag import (
    Chunk,
    ContextualRetrievalPipeline,
    EmbeddingUnavailable,
    InMemoryChunkStore,
    OllamaEmbeddingProvider,
    RetrievalFailed,
)
from contextrag.logging_config import configure_logging

console = Console()

CHUNK_FIELDS = {f.name for f in fields(Chunk)}


def load_corpus(path: Path) -> List[Chunk]:
    """
    Read chunks from a JSON file

    The file holds a list of chunk objects, or an object with a "chunks" list.
    Unknown keys are ignored; ``created_at`` is parsed as ISO 8601.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    records: List[Dict[str, Any]] = data["chunks"] if isinstance(data, dict) else data

    chunks = []
    for record in records:
        values = {key: value for key, value in record.items() if key in CHUNK_FIELDS}
        if isinstance(values.get("created_at"), str):
            values["created_at"] = datetime.fromisoformat(values["created_at"])
        chunks.append(Chunk(**values))

    return chunks


def embed_missing(chunks: List[Chunk], embedder) -> int:
    """Embed chunks that arrive without a vector; returns how many were embedded"""
    embedded = 0
    for chunk in chunks:
        if chunk.embedding is None:
            chunk.embedding = embedder.embed(chunk.content).tolist()
            embedded += 1
    return embedded


@click.command()
@click.option(
    "--corpus",
    "corpus_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with chunks",
)
@click.option(
    "--query",
    "-q",
    prompt="Enter your query",
    help="Search query",
)
@click.option(
    "--strategy",
    default=None,
    help="Force a retrieval strategy",
)
@click.option(
    "--reranking-model",
    default=None,
    help="Force a reranking model",
)
@click.option(
    "--max-chunks",
    default=settings.MAX_RETRIEVED_CHUNKS,
    show_default=True,
    help="Chunks returned by retrieval",
)
@click.option(
    "--citation-format",
    type=click.Choice(["inline", "detailed", "academic", "numbered"]),
    default=settings.CITATION_FORMAT,
    show_default=True,
    help="Citation format",
)
@click.option(
    "--embed-corpus/--no-embed-corpus",
    default=True,
    help="Embed chunks that have no precomputed embedding",
)
@click.option(
    "--show-prompt/--no-show-prompt",
    default=False,
    help="Print the assembled prompt",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Print the result as JSON instead of tables",
)
@click.option(
    "--log-level",
    default=settings.LOG_LEVEL,
    show_default=True,
    help="Log level",
)
def main(
    corpus_path: Path,
    query: str,
    strategy: str,
    reranking_model: str,
    max_chunks: int,
    citation_format: str,
    embed_corpus: bool,
    show_prompt: bool,
    json_output: bool,
    log_level: str,
):
    """
    Query a chunk corpus with the contextual retrieval pipeline
    """
    configure_logging(log_level)

    chunks = load_corpus(corpus_path)
    embedder = OllamaEmbeddingProvider()

    if embed_corpus:
        try:
            embedded = embed_missing(chunks, embedder)
            if embedded and not json_output:
                console.print(f"[green]✓[/green] Embedded {embedded} chunks")
        except EmbeddingUnavailable as e:
            if not json_output:
                console.print(f"[yellow]⚠️  Corpus embedding failed: {e}[/yellow]")
            for chunk in chunks:
                chunk.embedding = None

    store = InMemoryChunkStore(chunks)
    pipeline = ContextualRetrievalPipeline(store, embedder)

    try:
        result = pipeline.retrieve(
            query,
            options={
                "strategy": strategy,
                "reranking_model": reranking_model,
                "max_retrieved_chunks": max_chunks,
            },
        )
    except RetrievalFailed as e:
        console.print(f"[bold red]❌ Retrieval failed:[/bold red] {e}")
        sys.exit(1)
    finally:
        pipeline.close()

    assembled = pipeline.assemble_rag_prompt(
        query,
        result.chunks,
        options={
            "citation_format": citation_format,
            "query_type": result.metadata.get("query_analysis", {}).get("query_type"),
        },
    )

    if json_output:
        click.echo(json.dumps({
            "retrieval": result.to_dict(),
            "prompt": assembled.to_dict(),
        }, indent=2, default=str))
        return

    console.print(Panel(query, title="Query", border_style="cyan"))

    if not result.chunks:
        console.print(f"[yellow]No chunks retrieved (strategy: {result.strategy})[/yellow]")
        return

    table = Table(title=f"Retrieved Chunks ({result.strategy})")
    table.add_column("#", style="dim")
    table.add_column("Chunk", style="cyan")
    table.add_column("Source", style="green")
    table.add_column("Page")
    table.add_column("Score", justify="right")

    for idx, (chunk, citation) in enumerate(zip(result.chunks, assembled.citations), 1):
        table.add_row(
            str(idx),
            chunk.chunk_id,
            citation.source,
            str(citation.page),
            f"{chunk.final_score:.3f}",
        )

    console.print(table)

    console.print("\n[bold]Citations:[/bold]")
    for citation in assembled.citations:
        console.print(f"  [{citation.number}] {citation.formatted}")

    validation = assembled.metadata["token_validation"]
    console.print(
        f"\nTemplate: {assembled.metadata['template_type']} | "
        f"~{validation['total_tokens']} tokens of {validation['max_allowed']} | "
        f"confidence {result.confidence:.3f}"
    )

    if show_prompt:
        console.print(Panel(assembled.prompt.combined, title="Prompt", border_style="blue"))

    console.print("\n[bold green]✅ Query completed![/bold green]\n")


if __name__ == "__main__":
    main()
