#!/usr/bin/env python3
"""
Fitness Knowledge Retrieval - developer CLI.

Runs the ingestion pipeline and the retrieval core against a JSON snapshot of
the in-memory chunk store. Usage: ``python -m src.main --help``.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
import structlog

from src.config.rag_config import (
    RagConfig, RagConfigStore, build_rag_config, json_file_config_loader, settings_config_loader
)
from src.config.settings import Settings, get_settings
from src.document_management.chunk_store import InMemoryChunkStore
from src.document_management.document_manager import DocumentManager
from src.rag.retrieval_service import create_retrieval_service
from src.services.logging_service import setup_logging
from src.utils.console import RetrievalConsole, create_console
from src.utils.error_handlers import RetrievalBaseError, handle_error

logger = structlog.get_logger(__name__).bind(log_type="SYSTEM")


class CliContext:
    """Objects shared by CLI commands."""

    def __init__(self, settings: Settings, console: RetrievalConsole, store_path: Path, debug: bool):
        self.settings = settings
        self.console = console
        self.store_path = store_path
        self.debug = debug

    def load_store(self) -> InMemoryChunkStore:
        return InMemoryChunkStore.load(self.store_path)

    def config_store(self) -> RagConfigStore:
        if self.settings.rag_config_path:
            loader = json_file_config_loader(self.settings.rag_config_path, RagConfig.from_settings(self.settings))
        else:
            loader = settings_config_loader(self.settings)
        return RagConfigStore(loader, ttl_seconds=self.settings.rag_config_cache_ttl_seconds)


def _fail(cli_ctx: CliContext, error: Exception, message: str):
    converted = handle_error(error, log_error=cli_ctx.debug)
    cli_ctx.console.print_error(converted)
    raise click.ClickException(message)


@click.group()
@click.option(
    '--log-level',
    envvar='LOG_LEVEL',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='WARNING',
    help='Log level'
)
@click.option(
    '--store-path',
    envvar='KNOWLEDGE_STORE_PATH',
    type=click.Path(dir_okay=False),
    help='Chunk store snapshot (defaults to KNOWLEDGE_STORE_PATH)'
)
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(click_ctx, log_level: str, store_path: Optional[str], debug: bool):
    """
    Fitness Knowledge Retrieval

    Ingest documents and run hybrid retrieval against a local knowledge store.
    """
    try:
        settings = get_settings()
        settings.log_level = 'DEBUG' if debug else log_level.upper()
        setup_logging(settings)
    except Exception as e:
        raise click.ClickException(f"Initialization failed: {str(e)}")

    click_ctx.obj = CliContext(
        settings=settings,
        console=create_console(),
        store_path=Path(store_path or settings.knowledge_store_path),
        debug=debug
    )


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--title', required=True, help='Document title (prefixed to every chunk)')
@click.option('--document-id', help='Document id (generated when omitted)')
@click.pass_obj
def ingest(cli_ctx: CliContext, file: str, title: str, document_id: Optional[str]):
    """Chunk, embed and store a UTF-8 text document."""
    store = cli_ctx.load_store()
    text = Path(file).read_text(encoding='utf-8')

    try:
        manager = DocumentManager.from_settings(cli_ctx.settings, store)
        with cli_ctx.console.show_status("Ingesting document..."):
            result = asyncio.run(manager.ingest_document(title=title, text=text, document_id=document_id))
    except RetrievalBaseError as e:
        _fail(cli_ctx, e, "Ingestion could not start")

    store.save(cli_ctx.store_path)

    if not result.success:
        cli_ctx.console.print_status(f"Ingestion failed: {result.error}", "error")
        raise click.ClickException(f"Document {result.document_id} is {result.status.value}")

    cli_ctx.console.print_status(
        f"Ingested {result.document_id}: {result.embedded_count}/{result.chunk_count} chunks embedded",
        "success"
    )
    for warning in result.warnings:
        cli_ctx.console.print_status(warning, "warning")


@cli.command()
@click.argument('text')
@click.option('--max-chunks', type=int, help='Override max chunks returned')
@click.option('--threshold', type=float, help='Override the similarity threshold')
@click.option('--no-multi-query', is_flag=True, help='Disable multi-query fan-out')
@click.option('--rerank', is_flag=True, help='Apply heuristic re-ranking')
@click.option(
    '--output-format',
    type=click.Choice(['text', 'json']),
    default='text',
    help='Output format'
)
@click.pass_obj
def query(
    cli_ctx: CliContext,
    text: str,
    max_chunks: Optional[int],
    threshold: Optional[float],
    no_multi_query: bool,
    rerank: bool,
    output_format: str
):
    """Retrieve ranked snippets for a question."""
    overrides = {}
    if max_chunks is not None:
        overrides['max_chunks'] = max_chunks
    if threshold is not None:
        overrides['similarity_threshold'] = threshold
    if no_multi_query:
        overrides['enable_multi_query'] = False
    if rerank:
        overrides['rerank'] = True

    try:
        base = cli_ctx.config_store().get()
        config = build_rag_config(source="command line", **{**base.model_dump(), **overrides}) if overrides else base
        service = create_retrieval_service(cli_ctx.settings, cli_ctx.load_store())
        with cli_ctx.console.show_status("Searching knowledge base..."):
            response = asyncio.run(service.retrieve(text, config))
    except RetrievalBaseError as e:
        _fail(cli_ctx, e, "Retrieval failed")

    if output_format == 'json':
        click.echo(json.dumps(response.model_dump(mode='json'), indent=2, ensure_ascii=False))
        return

    cli_ctx.console.print_snippets(response)
    if cli_ctx.debug and response.processed_query:
        click.echo(
            f"\n[Debug] queries={response.processed_query.expanded_queries} "
            f"translated={response.used_translation} time={response.duration:.2f}s",
            err=True
        )


@cli.command()
@click.argument('document_id')
@click.pass_obj
def delete(cli_ctx: CliContext, document_id: str):
    """Delete a document (embeddings are nulled first)."""
    store = cli_ctx.load_store()
    result = asyncio.run(store.delete_document(document_id))
    if not result.success:
        cli_ctx.console.print_status(result.error, "error")
        raise click.ClickException(f"Could not delete {document_id}")

    store.save(cli_ctx.store_path)
    cli_ctx.console.print_status(
        f"Deleted {document_id}: {result.nulled_embeddings} embeddings nulled, {result.deleted_count} chunks removed",
        "success"
    )


@cli.command()
@click.pass_obj
def stats(cli_ctx: CliContext):
    """Show knowledge store statistics."""
    store = cli_ctx.load_store()
    statistics = asyncio.run(store.get_statistics())
    documents = asyncio.run(store.list_documents())

    cli_ctx.console.print_table([
        {'Metric': 'Documents', 'Value': statistics.total_documents},
        {'Metric': 'Chunks', 'Value': statistics.total_chunks},
        {'Metric': 'Embedded chunks', 'Value': statistics.embedded_chunks},
        {'Metric': 'Embedding coverage', 'Value': f"{statistics.embedding_coverage:.1%}"},
        *[
            {'Metric': f"Status {status}", 'Value': count}
            for status, count in sorted(statistics.documents_by_status.items())
        ],
    ], title="Knowledge Store")

    if documents:
        cli_ctx.console.print_table([
            {'Id': document.document_id, 'Title': document.title, 'Status': document.status.value}
            for document in documents
        ], title="Documents")


@cli.command()
@click.pass_obj
def config(cli_ctx: CliContext):
    """Show the effective retrieval configuration (excluding secrets)."""
    settings = cli_ctx.settings
    try:
        rag_config = cli_ctx.config_store().get()
    except RetrievalBaseError as e:
        _fail(cli_ctx, e, "Invalid RAG configuration")

    cli_ctx.console.print_table([
        {'Setting': 'Environment', 'Value': settings.environment},
        {'Setting': 'Azure OpenAI Endpoint', 'Value': settings.azure_openai_endpoint or 'Not configured'},
        {'Setting': 'Embedding Deployment', 'Value': settings.azure_embedding_deployment or 'Not configured'},
        {'Setting': 'Chat Deployment', 'Value': settings.azure_openai_deployment or 'Not configured'},
        {'Setting': 'Key Vault URL', 'Value': settings.key_vault_url or 'Not configured'},
        {'Setting': 'Knowledge Store', 'Value': str(cli_ctx.store_path)},
        {'Setting': 'RAG Config File', 'Value': settings.rag_config_path or 'Not configured'},
    ], title="Current Configuration")

    cli_ctx.console.print_table(
        [{'Parameter': name, 'Value': value} for name, value in rag_config.model_dump().items()],
        title="RAG Configuration"
    )


if __name__ == "__main__":
    cli()
