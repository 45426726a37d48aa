"""CLI commands for the postmortem knowledge graph."""

import asyncio
import json
import logging
import sys

import click

from postmortem_kg.config import settings
from postmortem_kg.log import configure_logging

logger = logging.getLogger(__name__)

STAGE_CHOICES = ["business_impact", "mitigation", "causal_analysis"]


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """Postmortem Knowledge Graph CLI."""
    configure_logging(verbose)


@cli.command()
def init_database() -> None:
    """Initialize the database schema."""
    asyncio.run(_init_database())


async def _init_database() -> None:
    """Async implementation of init-database command."""
    from postmortem_kg.db.database import init_db

    await init_db()
    click.echo("Database initialized successfully!")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def import_incident(file: str) -> None:
    """Import incident records (one JSON object or a list) from FILE."""
    with open(file, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            click.echo(f"Error: {file} is not valid JSON: {e}", err=True)
            sys.exit(1)
    records = data if isinstance(data, list) else [data]
    asyncio.run(_import_incident(records))


async def _import_incident(records: list[dict]) -> None:
    """Async implementation of import-incident command."""
    from postmortem_kg.db.database import async_session_maker, init_db
    from postmortem_kg.incidents import upsert_incident

    await init_db()
    async with async_session_maker() as session:
        try:
            incidents = [await upsert_incident(session, record) for record in records]
        except ValueError as e:
            click.echo(f"Import failed: {e}", err=True)
            sys.exit(1)
        await session.commit()

    click.echo(f"Imported {len(incidents)} incident(s):")
    for incident in incidents:
        click.echo(f"  - {incident.incident_number}: {incident.id} ({incident.status})")


@cli.command()
@click.argument("incident_id")
@click.option(
    "--stage",
    "-s",
    "stages",
    multiple=True,
    type=click.Choice(STAGE_CHOICES),
    help="Stage to (re)run; repeat for several (default: all)",
)
@click.option("--actor", "-a", required=True, help="Identity recorded as the author")
def generate(incident_id: str, stages: tuple[str, ...], actor: str) -> None:
    """Generate postmortem sections for a resolved incident."""
    asyncio.run(_generate(incident_id, list(stages), actor))


async def _generate(incident_id: str, stages: list[str], actor: str) -> None:
    """Async implementation of generate command."""
    from postmortem_kg.db.database import init_db
    from postmortem_kg.llm import LLMProviderNotConfiguredError
    from postmortem_kg.locks import IncidentBusyError
    from postmortem_kg.postmortem.exceptions import GenerationStageError, PostmortemError
    from postmortem_kg.postmortem.generator import PostmortemGenerator

    await init_db()
    generator = PostmortemGenerator()
    try:
        result = await generator.generate(incident_id, actor, stages or None)
    except GenerationStageError as e:
        click.echo(f"Generation failed at stage {e.stage} ({e.provider}): {e}", err=True)
        status = await generator.get_generation_status(incident_id)
        if status and status.completed_stages:
            click.echo(f"  Completed stages kept: {', '.join(status.completed_stages)}", err=True)
        sys.exit(1)
    except (PostmortemError, IncidentBusyError, LLMProviderNotConfiguredError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"\nGeneration complete!")
    click.echo(f"  Postmortem: {result.postmortem_id}")
    click.echo(f"  Stages run: {', '.join(s.value for s in result.completed_stages)}")
    click.echo(f"  Stages written: {', '.join(s.value for s in result.applied_stages) or 'none'}")


@cli.command()
@click.argument("incident_id")
@click.option("--actor", "-a", required=True, help="Identity of the publisher")
def publish(incident_id: str, actor: str) -> None:
    """Publish an incident's postmortem and index it."""
    asyncio.run(_publish(incident_id, actor))


async def _publish(incident_id: str, actor: str) -> None:
    """Async implementation of publish command."""
    from postmortem_kg.db.database import init_db
    from postmortem_kg.postmortem.exceptions import PostmortemError
    from postmortem_kg.postmortem.service import PostmortemService

    await init_db()
    service = PostmortemService()
    try:
        outcome = await service.publish(incident_id, actor)
    except PostmortemError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Published postmortem {outcome.postmortem['id']}")
    if outcome.index_postmortem_id:
        result = await service.index_published(outcome.index_postmortem_id)
        if result is None:
            click.echo("  Indexing failed; retry with 'postmortem-kg index --all'", err=True)
        else:
            click.echo(f"  Indexed (v{result.version}, dim={result.dimension})")


@cli.command()
@click.argument("postmortem_id", required=False)
@click.option("--all", "all_pending", is_flag=True, help="Retry every pending or failed index")
def index(postmortem_id: str | None, all_pending: bool) -> None:
    """Index one published postmortem, or all that are not indexed yet."""
    if not postmortem_id and not all_pending:
        click.echo("Error: give a POSTMORTEM_ID or --all", err=True)
        sys.exit(1)
    asyncio.run(_index(postmortem_id, all_pending))


async def _index(postmortem_id: str | None, all_pending: bool) -> None:
    """Async implementation of index command."""
    from postmortem_kg.db.database import init_db
    from postmortem_kg.postmortem.exceptions import PostmortemNotFoundError
    from postmortem_kg.vectorstore.exceptions import EmbeddingError
    from postmortem_kg.vectorstore.indexer import EmbeddingIndexer

    await init_db()
    indexer = EmbeddingIndexer()
    try:
        if all_pending:
            stats = await indexer.index_pending()
            click.echo(f"\nIndexing complete!")
            click.echo(f"  Indexed: {stats['indexed']}")
            click.echo(f"  Failed: {stats['failed']}")
            return

        result = await indexer.index_postmortem(postmortem_id)
    except (PostmortemNotFoundError, EmbeddingError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if result.indexed:
        click.echo(f"Indexed postmortem {postmortem_id} (v{result.version}, dim={result.dimension})")
    else:
        click.echo(f"Skipped postmortem {postmortem_id}: {result.reason}")


@cli.command()
@click.argument("incident_id")
@click.option("--refresh", "-r", is_flag=True, help="Ignore the cache and recompute")
def recommend(incident_id: str, refresh: bool) -> None:
    """Show recommendations from similar past incidents."""
    asyncio.run(_recommend(incident_id, refresh))


async def _recommend(incident_id: str, refresh: bool) -> None:
    """Async implementation of recommend command."""
    from postmortem_kg.db.database import init_db
    from postmortem_kg.llm import LLMError
    from postmortem_kg.postmortem.exceptions import IncidentNotFoundError
    from postmortem_kg.recommendations.service import RecommendationService
    from postmortem_kg.vectorstore.exceptions import DimensionMismatchError, EmbeddingError

    await init_db()
    try:
        result = await RecommendationService().get_recommendations(
            incident_id, force_refresh=refresh
        )
    except IncidentNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except (LLMError, EmbeddingError, DimensionMismatchError) as e:
        click.echo(f"Recommendation failed: {e}", err=True)
        sys.exit(1)

    if not result.available:
        click.echo(result.message)
        return
    if not result.recommendations:
        click.echo("No similar past incidents found.")
        return

    source = "cache" if result.cached else "fresh"
    click.echo(f"\n{len(result.recommendations)} recommendation(s) ({source}):")
    for rec in result.recommendations:
        click.echo(f"\n[{rec.incident_number}] {rec.title} ({rec.severity}, {rec.similarity_score:.2f})")
        click.echo(f"  {rec.recommendation}")
        if rec.details:
            click.echo(f"  {rec.details}")
        for action in rec.actions:
            click.echo(f"    - {action}")


@cli.command()
def check_providers() -> None:
    """Check completion and embedding provider configuration."""
    asyncio.run(_check_providers())


async def _check_providers() -> None:
    """Async implementation of check-providers command."""
    from postmortem_kg.llm import LLMProviderNotConfiguredError, get_llm
    from postmortem_kg.vectorstore.embeddings import get_embeddings
    from postmortem_kg.vectorstore.exceptions import EmbeddingProviderNotConfiguredError

    try:
        llm = await get_llm()
        healthy = await llm.check_health()
        click.echo(f"LLM: {llm.provider_name} ({llm.model}) - {'healthy' if healthy else 'unreachable'}")
    except LLMProviderNotConfiguredError as e:
        click.echo(f"LLM: not configured ({e})")

    try:
        embeddings = get_embeddings()
        available = await embeddings.is_available()
        click.echo(
            f"Embeddings: {embeddings.provider_name} ({embeddings.model_name}) - "
            f"{'available' if available else 'not configured'}"
        )
    except EmbeddingProviderNotConfiguredError as e:
        click.echo(f"Embeddings: not configured ({e})")

    click.echo(f"\nRecommendation policy:")
    click.echo(f"  Cache TTL: {settings.RECOMMENDATION_CACHE_TTL_MINUTES} minutes")
    click.echo(f"  Top N: {settings.RECOMMENDATION_TOP_N}")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", "-p", type=int, default=8000, help="Port")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the API server."""
    import uvicorn

    uvicorn.run("postmortem_kg.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
