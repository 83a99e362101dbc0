"""Click CLI: settings, roster editing, connection check and running a debate."""

import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path

import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from config.config_loader import (
    PROVIDER_KINDS,
    AppConfig,
    DebateSettings,
    ProviderConfig,
    SettingsStore,
    SessionSettings,
    load_config,
    resolve_api_key,
)
from roundtable.engine import ConfigurationError, TurnEngine
from roundtable.gateway import GenerationGateway, build_provider
from roundtable.healthcheck import check_provider
from roundtable.models import ParticipantRole, SessionState
from roundtable.output import (
    format_time,
    print_header,
    print_message,
    print_outcome,
    print_participants,
    print_status,
    save_export,
)
from roundtable.providers.base import AIProvider, ProviderError
from roundtable.registry import ParticipantRegistry, RosterLockedError

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    sys.exit(1)


async def _ping(provider: AIProvider) -> tuple[bool, str]:
    try:
        return await check_provider(provider)
    finally:
        await provider.aclose()


def _check_connection(provider_config: ProviderConfig) -> None:
    """Ping the configured backend; exits with status 1 when it is unreachable."""
    try:
        provider = build_provider(provider_config)
    except ProviderError as exc:
        _fail(str(exc))
    console.print(f"[bold]Checking {provider.name()} ({provider.model_string()})...[/bold]")
    ok, err = asyncio.run(_ping(provider))
    if not ok:
        short_err = err.splitlines()[0][:160] if err else "unknown error"
        console.print(f"  [red]FAIL[/red] {escape(short_err)}")
        sys.exit(1)
    console.print("  [green]OK[/green]  Connection successful!")


def _install_pause_handlers(engine: TurnEngine) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig, handler in ((signal.SIGINT, engine.toggle_pause), (signal.SIGTERM, engine.reset)):
        try:
            loop.add_signal_handler(sig, handler)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported on this platform", sig.name)
    return installed


async def _run_session(engine: TurnEngine, gateway: GenerationGateway, session: SessionSettings) -> None:
    installed = _install_pause_handlers(engine)
    try:
        await engine.start(session)
        await engine.wait_closed()
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
        await gateway.aclose()


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """AI Round Table -- a moderated debate between AI personas.

    \b
    Examples:
      roundtable run --time-limit 5
      roundtable run --provider lmstudio --port 1234 --language es
      roundtable participants add --name "Emmy Noether" --avatar EN
      roundtable settings show
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    ctx.obj = {"config": config, "store": SettingsStore(config)}


def _store(ctx: click.Context) -> SettingsStore:
    return ctx.obj["store"]


def _config(ctx: click.Context) -> AppConfig:
    return ctx.obj["config"]


def _load_settings(ctx: click.Context) -> DebateSettings:
    """Load the saved settings; exits with status 1 if they are unreadable or the roster is invalid."""
    store = _store(ctx)
    try:
        settings = store.load()
        ParticipantRegistry(settings.participants)
    except (KeyError, TypeError, ValueError, yaml.YAMLError) as exc:
        _fail(
            f"Saved settings at {store.path} are invalid: {exc}. "
            "Run `roundtable settings reset` to restore the defaults."
        )
    return settings


@main.command()
@click.option("--topic", default=None, help="Debate topic")
@click.option("--time-limit", type=click.IntRange(min=1), default=None, help="Time limit in minutes")
@click.option("--thinking", type=click.FloatRange(min=0), default=None,
              help="Pause in seconds before each participant speaks")
@click.option("--language", default=None, help="Debate language code (e.g. en, es)")
@click.option("--provider", type=click.Choice(PROVIDER_KINDS), default=None, help="Generation backend")
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="LM Studio server port")
@click.option("--api-key", default=None, help="Gemini API key (default: from environment)")
@click.option("--output", "output_path", default=None, help="Directory for the exported transcript")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the provider connection check at startup")
@click.option("--no-export", is_flag=True, default=False, help="Do not save the transcript")
@click.pass_context
def run(
    ctx: click.Context,
    topic: str | None,
    time_limit: int | None,
    thinking: float | None,
    language: str | None,
    provider: str | None,
    port: int | None,
    api_key: str | None,
    output_path: str | None,
    skip_health_check: bool,
    no_export: bool,
) -> None:
    """Run a debate with the saved settings (options are saved as the new defaults)."""
    config = _config(ctx)
    store = _store(ctx)
    settings = _load_settings(ctx)
    if language is not None and language not in config.languages:
        _fail(f"Unknown language: {language}. Choose from: {', '.join(sorted(config.languages))}")

    provider_cfg = settings.provider
    if provider is not None:
        provider_cfg = replace(provider_cfg, kind=provider)
    if port is not None:
        provider_cfg = replace(provider_cfg, lmstudio_port=port)
    changes = {
        key: value
        for key, value in (
            ("topic", topic),
            ("time_limit_min", time_limit),
            ("thinking_sec", thinking),
            ("language", language),
        )
        if value is not None
    }
    if changes or provider_cfg != settings.provider:
        settings = replace(settings, provider=provider_cfg, **changes)
        store.save(settings)

    provider_cfg = resolve_api_key(replace(provider_cfg, api_key=api_key or ""))
    session = replace(settings.snapshot(), provider=provider_cfg)

    registry = ParticipantRegistry(settings.participants)
    roster = registry.all()
    gateway = GenerationGateway(config.prompts, config.languages)
    engine = TurnEngine(
        gateway=gateway,
        registry=registry,
        max_turns=config.defaults.max_turns,
        on_message=lambda message: print_message(message, roster),
        on_status=print_status,
    )

    try:
        engine.validate(session)
    except ConfigurationError as exc:
        _fail(str(exc))

    if not skip_health_check:
        _check_connection(provider_cfg)

    print_header(session.topic, roster, session.time_limit_sec)
    asyncio.run(_run_session(engine, gateway, session))

    print_outcome(engine.state, engine.reason)
    if engine.state is not SessionState.CONFIGURING:
        console.print(f"[dim]Turns: {engine.turn_count} | Time left: {format_time(engine.remaining_seconds)}[/dim]")
    if not no_export and engine.state is not SessionState.CONFIGURING and engine.transcript:
        output_dir = Path(output_path) if output_path else config.defaults.output_dir
        saved = save_export(engine.export_transcript(), output_dir)
        console.print(f"\n[dim]Saved to: {saved}[/dim]")
    if engine.state is SessionState.FAILED:
        sys.exit(1)


@main.command()
@click.option("--api-key", default=None, help="Gemini API key (default: from environment)")
@click.pass_context
def check(ctx: click.Context, api_key: str | None) -> None:
    """Test the connection to the configured provider."""
    settings = _load_settings(ctx)
    _check_connection(resolve_api_key(replace(settings.provider, api_key=api_key or "")))


@main.group("participants")
def participants_group() -> None:
    """List and edit the debate roster."""


def _edit_roster(ctx: click.Context, action) -> None:
    store = _store(ctx)
    settings = _load_settings(ctx)
    registry = ParticipantRegistry(settings.participants)
    try:
        result = action(registry)
    except (KeyError, ValueError, RosterLockedError) as exc:
        _fail(f"{exc}")
    settings.participants = registry.all()
    store.save(settings)
    if result is not None:
        console.print(f"[green]OK[/green] {escape(result.name)} ({result.id})")


@participants_group.command("list")
@click.pass_context
def list_participants(ctx: click.Context) -> None:
    """Show the current roster."""
    print_participants(_load_settings(ctx).participants)


@participants_group.command("add")
@click.option("--name", default="New Mathematician", help="Display name")
@click.option("--persona", default="A brilliant mind from an unknown era, specializing in...",
              help="Persona text steering the participant")
@click.option("--avatar", default="??", help="Avatar (2 letters)")
@click.pass_context
def add_participant(ctx: click.Context, name: str, persona: str, avatar: str) -> None:
    """Add a debate member."""
    _edit_roster(ctx, lambda registry: registry.add_member(name=name, persona=persona, avatar=avatar))


@participants_group.command("edit")
@click.argument("participant_id")
@click.option("--name", default=None, help="Display name")
@click.option("--persona", default=None, help="Persona text")
@click.option("--avatar", default=None, help="Avatar (2 letters)")
@click.pass_context
def edit_participant(
    ctx: click.Context,
    participant_id: str,
    name: str | None,
    persona: str | None,
    avatar: str | None,
) -> None:
    """Edit a participant's name, persona or avatar."""
    changes = {k: v for k, v in (("name", name), ("persona", persona), ("avatar", avatar)) if v is not None}
    if not changes:
        _fail("Nothing to change: pass --name, --persona or --avatar")
    _edit_roster(ctx, lambda registry: registry.update(participant_id, **changes))


@participants_group.command("remove")
@click.argument("participant_id")
@click.pass_context
def remove_participant(ctx: click.Context, participant_id: str) -> None:
    """Remove a debate member."""
    _edit_roster(ctx, lambda registry: registry.remove(participant_id))


@main.group("settings")
def settings_group() -> None:
    """Show or reset the saved debate settings."""


@settings_group.command("show")
@click.pass_context
def show_settings(ctx: click.Context) -> None:
    """Print the saved settings."""
    store = _store(ctx)
    current = _load_settings(ctx)
    table = Table(title=f"Settings ({store.path})", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value", overflow="fold")
    table.add_row("Topic", current.topic)
    table.add_row("Time limit", f"{current.time_limit_min} min")
    table.add_row("Thinking time", f"{current.thinking_sec:g} s")
    table.add_row("Language", current.language)
    table.add_row("Provider", current.provider.kind)
    table.add_row("Gemini model", current.provider.gemini_model)
    table.add_row("LM Studio port", str(current.provider.lmstudio_port))
    table.add_row("Members", str(sum(1 for p in current.participants if p.role is ParticipantRole.MEMBER)))
    console.print(table)


@settings_group.command("reset")
@click.confirmation_option(prompt="Restore the default topic, roster and provider settings?")
@click.pass_context
def reset_settings(ctx: click.Context) -> None:
    """Restore the bundled defaults."""
    path = _store(ctx).path
    _store(ctx).reset()
    console.print(f"[green]OK[/green] Defaults restored ({path})")


if __name__ == "__main__":
    main()
