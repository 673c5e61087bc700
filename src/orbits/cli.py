"""Command-line entry point for Orbits sync and inbox workflows."""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import NoReturn

import asyncpg
import click

from orbits import __version__
from orbits.config import DEFAULT_CONFIG_PATH, ConfigError, OrbitsConfig, load_config
from orbits.core.logging import configure_logging
from orbits.core.telemetry import init_telemetry
from orbits.db import Database, db_params_from_env, db_params_from_url
from orbits.models import Person
from orbits.people import PeopleService, PersonNotFoundError
from orbits.store import PersonRepository, PostgresRecordStore, StoreError, ensure_schema
from orbits.sync.directory import ContactDirectoryReader, DirectoryAccessError
from orbits.sync.engine import SyncEngine, SyncError, SyncResult
from orbits.sync.messages import MessageArchiveReader
from orbits.sync.permissions import PermissionOracle
from orbits.sync.session import FileSessionProvider

logger = logging.getLogger(__name__)


def _database(config: OrbitsConfig) -> Database:
    params = db_params_from_url(config.db.url) if config.db.url else db_params_from_env()
    return Database.from_params(
        params,
        db_name=config.db.name,
        min_pool_size=config.db.min_pool_size,
        max_pool_size=config.db.max_pool_size,
    )


async def _connect(db: Database, *, provision: bool = False) -> asyncpg.Pool:
    """Open the pool, reporting an unreachable or refusing server as :class:`StoreError`."""
    try:
        if provision:
            await db.provision()
        return await db.connect()
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        raise StoreError(
            f"Cannot connect to database {db.db_name!r} at {db.host}:{db.port}: {exc}"
        ) from exc


@asynccontextmanager
async def open_repository(config: OrbitsConfig) -> AsyncIterator[PersonRepository]:
    """Yield a repository over a fresh pool, closing the pool afterwards."""
    db = _database(config)
    pool = await _connect(db)
    try:
        yield PersonRepository(PostgresRecordStore(pool))
    finally:
        await db.close()


def build_engine(config: OrbitsConfig, repository: PersonRepository) -> SyncEngine:
    paths = config.paths
    return SyncEngine(
        repository=repository,
        session_provider=FileSessionProvider(paths.session_file),
        permissions=PermissionOracle(paths.contacts_root, paths.message_archive),
        contacts_reader=ContactDirectoryReader(paths.contacts_root),
        messages_reader=MessageArchiveReader(paths.message_archive),
        batch_size=config.sync.batch_size,
        thread_query_mode=config.sync.thread_query_mode,  # type: ignore[arg-type]
        insert_mode=config.sync.insert_mode,  # type: ignore[arg-type]
        cadence_minutes=config.sync.cadence_minutes,
    )


def _format_result(result: SyncResult) -> str:
    line = (
        f"Synced {result.contacts_observed} contacts "
        f"({result.contacts_skipped} skipped, {result.threads_processed} message threads): "
        f"{result.records_inserted} inserted, {result.records_updated} updated, "
        f"{result.records_unchanged} unchanged"
    )
    if not result.messages_available:
        line += " [no message data]"
    if result.failed_inserts:
        line += f"\nFailed inserts: {', '.join(result.failed_inserts)}"
    return line


def _format_person(person: Person) -> str:
    last = person.last_message_at.strftime("%Y-%m-%d %H:%M") if person.last_message_at else "-"
    flag = "needs reply" if person.needs_response else ""
    name = person.display_name or ""
    return f"{person.id}  {name:<30} {person.unread_count:>4}  {last:<16} {flag}".rstrip()


def _fail(message: str) -> NoReturn:
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to orbits.toml (defaults are used when it does not exist)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Orbits: sync local contacts and Messages activity to your people store."""
    try:
        config = load_config(config_path) if config_path.exists() else OrbitsConfig()
    except ConfigError as exc:
        _fail(f"Config error: {exc}")
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    ctx.obj = config


@cli.command()
@click.option("--watch", is_flag=True, help="Keep syncing every cadence_minutes")
@click.pass_obj
def sync(config: OrbitsConfig, watch: bool) -> None:
    """Run a sync for the signed-in user."""
    init_telemetry()
    try:
        asyncio.run(_sync(config, watch=watch))
    except (SyncError, DirectoryAccessError, StoreError) as exc:
        _fail(f"Sync failed: {exc}")


async def _sync(config: OrbitsConfig, *, watch: bool) -> None:
    async with open_repository(config) as repository:
        engine = build_engine(config, repository)
        if not watch:
            click.echo(_format_result(await engine.run()))
            return

        interval = config.sync.cadence_minutes * 60
        while True:
            try:
                click.echo(_format_result(await engine.run()))
            except (SyncError, DirectoryAccessError, StoreError) as exc:
                logger.error("Sync run failed: %s", exc)
            logger.info("Next sync in %d minutes", config.sync.cadence_minutes)
            await asyncio.sleep(interval)


@cli.command()
@click.pass_obj
def permissions(config: OrbitsConfig) -> None:
    """Report whether Contacts and Full Disk Access are granted."""
    status = PermissionOracle(config.paths.contacts_root, config.paths.message_archive).status()
    click.echo(status.summary)
    if not status.all_granted:
        click.echo(status.instructions)
        sys.exit(1)


@cli.command()
@click.pass_obj
def inbox(config: OrbitsConfig) -> None:
    """List people with unread messages or an open reply flag."""
    try:
        people = asyncio.run(_inbox(config))
    except StoreError as exc:
        _fail(f"Could not load inbox: {exc}")
    if people is None:
        _fail("Not signed in")
    if not people:
        click.echo("Inbox zero")
        return
    for person in people:
        click.echo(_format_person(person))


async def _inbox(config: OrbitsConfig) -> list[Person] | None:
    session = await FileSessionProvider(config.paths.session_file).current_session()
    if session is None:
        return None
    async with open_repository(config) as repository:
        return await PeopleService(repository).unread_inbox(session.user_id)


@cli.group("needs-response")
def needs_response() -> None:
    """Manually raise or clear a person's needs-response flag."""


@needs_response.command("mark")
@click.argument("person_id", type=click.UUID)
@click.pass_obj
def mark_cmd(config: OrbitsConfig, person_id: uuid.UUID) -> None:
    """Flag PERSON_ID as awaiting a reply."""
    _set_needs_response(config, person_id, True)


@needs_response.command("clear")
@click.argument("person_id", type=click.UUID)
@click.pass_obj
def clear_cmd(config: OrbitsConfig, person_id: uuid.UUID) -> None:
    """Clear the reply flag on PERSON_ID."""
    _set_needs_response(config, person_id, False)


def _set_needs_response(config: OrbitsConfig, person_id: uuid.UUID, flag: bool) -> None:
    async def _apply() -> Person:
        async with open_repository(config) as repository:
            service = PeopleService(repository)
            if flag:
                return await service.mark_needs_response(person_id)
            return await service.clear_needs_response(person_id)

    try:
        person = asyncio.run(_apply())
    except (PersonNotFoundError, StoreError) as exc:
        _fail(str(exc))
    state = "needs a reply" if person.needs_response else "cleared"
    click.echo(f"{person.display_name or person.id}: {state}")


@cli.command("init-db")
@click.pass_obj
def init_db(config: OrbitsConfig) -> None:
    """Create the database and the Orbits tables if missing."""
    try:
        asyncio.run(_init_db(config))
    except StoreError as exc:
        _fail(f"Database setup failed: {exc}")
    click.echo("Database ready")


async def _init_db(config: OrbitsConfig) -> None:
    db = _database(config)
    pool = await _connect(db, provision=True)
    try:
        await ensure_schema(pool)
    finally:
        await db.close()
