"""CLI for deltasync: run a sync cycle or initialize a baseline cursor."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

import click
import httpx

from deltasync.config import ConfigError, DeltaSyncConfig, FetcherConfig, load_config
from deltasync.core.logging import configure_logging
from deltasync.sync.backoff import BackoffExecutor, BackoffPolicy
from deltasync.sync.engine import IncrementalSyncEngine
from deltasync.sync.errors import DeltaSyncError
from deltasync.sync.fetcher import DeltaPageFetcher
from deltasync.sync.models import DateWindow, ResourceType
from deltasync.sync.rate_limiter import AccountRateLimiter
from deltasync.sync.stores import FileCursorStore

logger = logging.getLogger(__name__)

DEFAULT_CURSOR_FILE = Path(".deltasync") / "cursors.json"
DEFAULT_TOKEN_ENV = "DELTASYNC_ACCESS_TOKEN"


class EnvTokenProvider:
    """Serves a pre-issued bearer token from the environment."""

    def __init__(self, env_var: str) -> None:
        self._env_var = env_var

    async def get_valid_access_token(self, account_id: str) -> str:
        token = os.environ.get(self._env_var, "").strip()
        if not token:
            raise DeltaSyncError(f"No access token for account {account_id} in ${self._env_var}")
        return token


def _make_http_client(config: FetcherConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.request_timeout_s, connect=config.connect_timeout_s)
    )


def _build_engine(
    config: DeltaSyncConfig,
    http_client: httpx.AsyncClient,
    cursor_file: Path,
    token_env: str,
) -> IncrementalSyncEngine:
    fetcher = DeltaPageFetcher(
        EnvTokenProvider(token_env),
        rate_limiter=AccountRateLimiter.from_config(config.rate_limit),
        executor=BackoffExecutor(BackoffPolicy.from_config(config.backoff)),
        config=config.fetcher,
        http_client=http_client,
    )
    return IncrementalSyncEngine(fetcher, FileCursorStore(cursor_file), config=config.engine)


def _window(config: DeltaSyncConfig, window_days: int | None) -> DateWindow | None:
    if window_days is None:
        return None
    return DateWindow.around_now(
        window_days,
        lookback=timedelta(seconds=config.engine.window_lookback_s),
    )


def _common_options(func):
    func = click.option(
        "--token-env",
        default=DEFAULT_TOKEN_ENV,
        show_default=True,
        help="Environment variable holding the bearer token",
    )(func)
    func = click.option(
        "--cursor-file",
        type=click.Path(dir_okay=False, path_type=Path),
        default=DEFAULT_CURSOR_FILE,
        show_default=True,
        help="JSON file storing sync cursors",
    )(func)
    func = click.option(
        "--window-days",
        type=click.IntRange(min=1),
        default=None,
        help="Bound a cold start to the next N days (calendar feeds)",
    )(func)
    func = click.option(
        "--resource",
        "resource_type",
        type=click.Choice([member.value for member in ResourceType]),
        default=ResourceType.CALENDAR.value,
        show_default=True,
    )(func)
    return func


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to a deltasync TOML config",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """deltasync: incremental provider change-feed synchronization."""
    try:
        config = load_config(config_path) if config_path is not None else DeltaSyncConfig()
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    ctx.obj = config


@cli.command()
@click.argument("account_id")
@_common_options
@click.option("--stream", "streaming", is_flag=True, help="Print changes page by page")
@click.option("--force-reset", is_flag=True, help="Discard the stored cursor first")
@click.pass_obj
def sync(
    config: DeltaSyncConfig,
    account_id: str,
    resource_type: str,
    window_days: int | None,
    cursor_file: Path,
    token_env: str,
    streaming: bool,
    force_reset: bool,
) -> None:
    """Run one sync cycle for ACCOUNT_ID, printing changes as JSON lines."""
    try:
        count = asyncio.run(
            _run_sync(
                config,
                account_id,
                ResourceType(resource_type),
                window=_window(config, window_days),
                cursor_file=cursor_file,
                token_env=token_env,
                streaming=streaming,
                force_reset=force_reset,
            )
        )
    except DeltaSyncError as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"{count} change(s) synced", err=True)


@cli.command()
@click.argument("account_id")
@_common_options
@click.pass_obj
def baseline(
    config: DeltaSyncConfig,
    account_id: str,
    resource_type: str,
    window_days: int | None,
    cursor_file: Path,
    token_env: str,
) -> None:
    """Store a cursor at the head of ACCOUNT_ID's feed without printing items."""
    try:
        asyncio.run(
            _run_baseline(
                config,
                account_id,
                ResourceType(resource_type),
                window=_window(config, window_days),
                cursor_file=cursor_file,
                token_env=token_env,
            )
        )
    except DeltaSyncError as exc:
        click.echo(f"Baseline failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Baseline cursor stored in {cursor_file}")


async def _run_sync(
    config: DeltaSyncConfig,
    account_id: str,
    resource_type: ResourceType,
    *,
    window: DateWindow | None,
    cursor_file: Path,
    token_env: str,
    streaming: bool,
    force_reset: bool,
) -> int:
    count = 0
    async with _make_http_client(config.fetcher) as http_client:
        engine = _build_engine(config, http_client, cursor_file, token_env)
        if streaming:
            async for batch in engine.stream(
                account_id,
                resource_type,
                force_reset=force_reset,
                date_window=window,
            ):
                for change in batch:
                    click.echo(change.model_dump_json())
                count += len(batch)
            return count

        changes = await engine.sync(
            account_id,
            resource_type,
            force_reset=force_reset,
            date_window=window,
        )
        for change in changes:
            click.echo(change.model_dump_json())
        return len(changes)


async def _run_baseline(
    config: DeltaSyncConfig,
    account_id: str,
    resource_type: ResourceType,
    *,
    window: DateWindow | None,
    cursor_file: Path,
    token_env: str,
) -> str:
    async with _make_http_client(config.fetcher) as http_client:
        engine = _build_engine(config, http_client, cursor_file, token_env)
        cursor = await engine.initialize_baseline(account_id, resource_type, window)
    logger.info("Stored baseline cursor for account %s", account_id)
    return cursor


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
