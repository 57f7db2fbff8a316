"""Command line entry point.

Examples:
  siteporter info export.xml
  siteporter authors export.xml
  siteporter import export.xml --fetch-attachments --user-map users.yaml
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click
import structlog
import yaml

from Siteporter import db
from Siteporter.config import ImportOptions, Settings, load_settings
from Siteporter.errors import ImporterError
from Siteporter.fetch import AttachmentFetcher
from Siteporter.importer import ImportReport, WXRImporter
from Siteporter.logging import redact_settings, setup_logging
from Siteporter.reader import read_authors, read_site_info
from Siteporter.store import SqlContentStore

log = structlog.get_logger()

_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def load_user_map(path: Path) -> tuple[list[dict[str, Any]], dict[str, str]]:
    """Read a user-map YAML file.

    Two shapes are accepted: a list of ``{old_slug, old_id, new_id}`` entries,
    or a mapping with optional ``users`` (that same list) and
    ``slug_overrides`` (old login -> new login).

    Raises:
        click.BadParameter: If the file is not one of those shapes
    """
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, list):
        return data, {}
    if isinstance(data, dict):
        users = data.get("users") or []
        overrides = data.get("slug_overrides") or {}
        if isinstance(users, list) and isinstance(overrides, dict):
            return users, {str(k): str(v) for k, v in overrides.items()}
    raise click.BadParameter(
        "expected a list of {old_slug, old_id, new_id} or a mapping with users/slug_overrides",
        param_hint="--user-map",
    )


async def run_import(
    source: Path,
    options: ImportOptions,
    settings: Settings,
    *,
    user_map: list[dict[str, Any]] | None = None,
    slug_overrides: dict[str, str] | None = None,
) -> ImportReport:
    """Import ``source`` into the configured SQL database."""
    fetcher = None
    if options.fetch_attachments:
        fetcher = AttachmentFetcher(
            settings.uploads_dir,
            settings.uploads_base_url,
            max_size=options.max_attachment_size,
            timeout=options.fetch_timeout_seconds,
        )
    try:
        async with db.session_scope() as s:
            importer = WXRImporter(SqlContentStore(s), options, fetcher=fetcher)
            if user_map:
                importer.set_user_mapping(user_map)
            if slug_overrides:
                importer.set_user_slug_overrides(slug_overrides)
            return await importer.import_file(source)
    finally:
        if fetcher is not None:
            await fetcher.aclose()
        await db.dispose_engine()


@click.group()
@click.option("--database-url", default=None, help="Overrides database_url from config.toml/env.")
@click.pass_context
def main(ctx: click.Context, database_url: str | None) -> None:
    """Import WordPress WXR exports."""
    settings = load_settings()
    setup_logging(settings)
    if database_url:
        db.configure(database_url)
    log.debug("cli.settings", settings=redact_settings(settings))
    ctx.obj = settings


@main.command()
@click.argument("file", type=_FILE)
def info(file: Path) -> None:
    """Print counts and site metadata without touching the database."""
    try:
        site = read_site_info(file)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(site.as_dict())


@main.command()
@click.argument("file", type=_FILE)
def authors(file: Path) -> None:
    """Print the authors declared in an export."""
    try:
        users = read_authors(file)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(
        [
            {
                "login": u.login,
                "old_id": u.old_id,
                "email": u.email,
                "display_name": u.display_name,
            }
            for u in users
        ]
    )


@main.command("import")
@click.argument("file", type=_FILE)
@click.option("--fetch-attachments", is_flag=True, default=False, help="Download attachment files.")
@click.option("--aggressive-url-search", is_flag=True, default=False, help="Rewrite old attachment URLs in every post.")
@click.option("--default-author", type=int, default=None, help="User id for posts whose author is unknown.")
@click.option("--user-map", type=_FILE, default=None, help="YAML file mapping exported authors to existing users.")
@click.option("--no-prefill", is_flag=True, default=False, help="Look up existing content per entity instead of preloading it.")
@click.pass_obj
def import_(
    settings: Settings,
    file: Path,
    fetch_attachments: bool,
    aggressive_url_search: bool,
    default_author: int | None,
    user_map: Path | None,
    no_prefill: bool,
) -> None:
    """Import an export into the configured database and print the report."""
    update: dict[str, Any] = {}
    if fetch_attachments:
        update["fetch_attachments"] = True
    if aggressive_url_search:
        update["aggressive_url_search"] = True
    if default_author is not None:
        update["default_author"] = default_author
    if no_prefill:
        update.update(
            prefill_existing_posts=False,
            prefill_existing_comments=False,
            prefill_existing_terms=False,
            prefill_existing_users=False,
        )
    options = settings.importer.model_copy(update=update)

    mapping: list[dict[str, Any]] = []
    overrides: dict[str, str] = {}
    if user_map is not None:
        mapping, overrides = load_user_map(user_map)

    try:
        report = asyncio.run(
            run_import(file, options, settings, user_map=mapping, slug_overrides=overrides)
        )
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_json(report.summary())
    if report.aborted:
        raise click.exceptions.Exit(1)


if __name__ == "__main__":
    main()
