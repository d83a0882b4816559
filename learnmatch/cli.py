import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .__init__ import __version__
from .configuration import DEFAULT_DB_URL, Settings
from .errors import ContentStoreError, LearnMatchError, NotFoundError
from .models import CamelModel, ContentKind, Entity
from .pipeline import Pipeline
from .stores import bounded

load_dotenv(dotenv_path=find_dotenv(usecwd=True))

# command output goes to stdout, logs to stderr
structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    logger_factory=structlog.PrintLoggerFactory(sys.stderr),
)
log = structlog.get_logger()

T = TypeVar("T")

KIND_CHOICE = click.Choice([kind.value for kind in ContentKind], case_sensitive=False)
SUGGESTABLE_CHOICE = click.Choice(
    [kind.value for kind in ContentKind if kind.suggestable], case_sensitive=False
)


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    # getLevelName is deprecated but still the simplest name to number lookup
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.INFO


def echo_json(value: CamelModel | dict[str, Any]) -> None:
    if isinstance(value, CamelModel):
        value = value.model_dump(mode="json", by_alias=True)
    click.echo(json.dumps(value, indent=2))


def get_pipeline(ctx: click.Context) -> Pipeline:
    """The pipeline passed in as the context object, or one built from the env."""
    if isinstance(ctx.obj, Pipeline):
        return ctx.obj
    try:
        pipeline = Pipeline.from_settings(Settings.from_env())
    except LearnMatchError as e:
        raise click.ClickException(e.message) from e
    ctx.obj = pipeline
    return pipeline


def run(pipeline: Pipeline, work: Callable[[Pipeline], Awaitable[T]]) -> T:
    """Sets the pipeline up, runs `work`, and waits for background runs."""

    async def do() -> T:
        await pipeline.setup()
        try:
            return await work(pipeline)
        finally:
            await pipeline.close()

    try:
        return asyncio.run(do())
    except LearnMatchError as e:
        raise click.ClickException(e.message) from e


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
)
def cli(log_level: str):
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(log_level)),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


@cli.command()
@click.option(
    "-d",
    "--db-url",
    type=click.STRING,
    envvar="LEARNMATCH_DB_URL",
    default=DEFAULT_DB_URL,
    show_default=True,
    help="The database URL to connect to",
)
@click.option(
    "--dimensions",
    type=click.IntRange(min=1),
    envvar="LEARNMATCH_EMBEDDING_DIMENSIONS",
    default=1536,
    show_default=True,
    help="The size of the stored vectors",
)
@click.option(
    "--index-name",
    type=click.STRING,
    envvar="LEARNMATCH_VECTOR_INDEX_NAME",
    default="learnmatch_vectors",
    show_default=True,
)
def install(db_url: str, dimensions: int, index_name: str) -> None:
    """Create the tables learnmatch needs."""
    from .stores.postgres import install as install_tables

    asyncio.run(install_tables(db_url, dimensions, index_name))
    log.info(f"learnmatch {__version__} installed")


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check the embedding and vector backends. Exits 1 when either is down."""
    pipeline = get_pipeline(ctx)
    report = asyncio.run(pipeline.health.check())
    echo_json(report)
    if not report.overall:
        ctx.exit(1)


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("entity_id", required=False)
@click.option(
    "-f",
    "--file",
    "path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Embed the entity stored as JSON in this file instead of loading it",
)
@click.option("--owner-id", type=click.STRING, help="Defaults to the entity owner")
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Re-embed even if the text did not change",
)
@click.pass_context
def embed(
    ctx: click.Context,
    kind: str,
    entity_id: str | None,
    path: Path | None,
    owner_id: str | None,
    force: bool,
) -> None:
    """Embed one course, video or roadmap now and print its status record."""
    content_kind = ContentKind(kind.lower())
    if path is None and entity_id is None:
        raise click.UsageError("pass an ENTITY_ID or --file")
    file_entity = None
    if path is not None:
        try:
            file_entity = TypeAdapter(Entity).validate_json(path.read_text())
        except PydanticValidationError as e:
            raise click.ClickException(f"invalid entity in {path}: {e}") from e
        if file_entity.kind != content_kind.value:
            raise click.UsageError(f"{path} holds a {file_entity.kind}, not a {kind}")

    async def work(pipeline: Pipeline) -> CamelModel:
        entity = file_entity
        if entity is None:
            assert entity_id is not None
            entity = await bounded(
                pipeline.repository.get(content_kind, entity_id),
                timeout=pipeline.settings.request_timeout,
                error=ContentStoreError,
                operation="get",
            )
            if entity is None:
                raise NotFoundError(f"{content_kind.value} {entity_id} not found")
        return await pipeline.orchestrator.run(
            entity, owner_id or entity.owner_id, force=force
        )

    echo_json(run(get_pipeline(ctx), work))


@cli.command()
@click.argument("kind", type=SUGGESTABLE_CHOICE)
@click.argument("query")
@click.option("-k", "--top-k", type=click.INT, help="Number of suggestions")
@click.option("--roadmap-id", type=click.STRING)
@click.option("--node-id", type=click.STRING)
@click.option("--owner-id", type=click.STRING)
@click.pass_context
def suggest(
    ctx: click.Context,
    kind: str,
    query: str,
    top_k: int | None,
    roadmap_id: str | None,
    node_id: str | None,
    owner_id: str | None,
) -> None:
    """Print the courses or videos most similar to QUERY."""
    content_kind = ContentKind(kind.lower())

    async def work(pipeline: Pipeline) -> CamelModel:
        return await pipeline.matcher.suggest(
            content_kind,
            query,
            top_k=top_k,
            roadmap_id=roadmap_id,
            node_id=node_id,
            owner_id=owner_id,
        )

    echo_json(run(get_pipeline(ctx), work))


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("entity_id")
@click.option("--owner-id", type=click.STRING, required=True)
@click.pass_context
def status(ctx: click.Context, kind: str, entity_id: str, owner_id: str) -> None:
    """Print the embedding status of an entity."""
    content_kind = ContentKind(kind.lower())

    async def work(pipeline: Pipeline) -> CamelModel:
        return await pipeline.orchestrator.lookup(content_kind, entity_id, owner_id)

    echo_json(run(get_pipeline(ctx), work))
