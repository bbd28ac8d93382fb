"""
CLI for manual testing of the reminder playback system
"""

import asyncio
import os
import sys
from datetime import datetime

import click

from .assets import AssetResolver
from .config import ReminderConfig
from .errors import ConfigError, ReminderPlaybackError
from .events import default_events, default_rotation_sets, get_enabled_events, get_event_by_name
from .logging_utils import get_logger, setup_logging
from .models import EventKind
from .occupancy import in_maintenance_window
from .orchestrator import next_fire_time
from .tts import EdgeSpeechSynthesizer, SpeechCache

logger = get_logger(__name__)


def _speech_cache(config: ReminderConfig) -> SpeechCache:
    return SpeechCache(config.cache_dir, EdgeSpeechSynthesizer(), config.tts)


@click.group()
@click.option('--log-level', default=None, help='Log level (defaults to LOG_LEVEL)')
@click.option('--log-format', default=None, type=click.Choice(['text', 'json', 'simple']), help='Log format')
@click.pass_context
def cli(ctx, log_level, log_format):
    """Reminder Playback CLI - Inspect and trigger voice reminders"""
    try:
        config = ReminderConfig.from_env()
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    setup_logging(log_level=log_level or config.log_level, log_format=log_format or config.log_format)

    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['events'] = default_events(config.audio_dir)
    ctx.obj['rotation_sets'] = default_rotation_sets(config.audio_dir)


@cli.command()
@click.argument('event_name')
@click.pass_context
def trigger(ctx, event_name):
    """Log in, play EVENT_NAME once on every channel and exit"""
    from .bot import ReminderBot

    config = ctx.obj['config']
    try:
        config.validate_required()
    except ConfigError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    if get_event_by_name(ctx.obj['events'], event_name) is None:
        click.echo(f"Event '{event_name}' not found")
        sys.exit(1)

    bot = ReminderBot(config, events=ctx.obj['events'], rotation_sets=ctx.obj['rotation_sets'],
                      oneshot_event=event_name)
    click.echo(f"Triggering {event_name} on {len(config.channel_ids)} channels...")
    bot.run(config.token, log_handler=None)

    results = bot.last_results or []
    for result in results:
        line = f"  - {result.channel_id}: {result.outcome.value if result.outcome else 'unknown'}"
        if result.total_duration_ms is not None:
            line += f" ({result.total_duration_ms}ms)"
        if result.error:
            line += f" - {result.error}"
        click.echo(line)

    if not any(result.played for result in results):
        sys.exit(1)


@cli.command(name='list-events')
@click.option('--all', 'show_all', is_flag=True, help='Include disabled events')
@click.pass_context
def list_events(ctx, show_all):
    """List reminder events and their next fire time"""
    config = ctx.obj['config']
    events = ctx.obj['events'] if show_all else get_enabled_events(ctx.obj['events'])
    now = datetime.now(config.tzinfo)

    click.echo(f"{len(events)} events (timezone {config.timezone}):")
    for event in events:
        try:
            next_fire = next_fire_time(event.cron, config.tzinfo, now)
            when = next_fire.strftime('%Y-%m-%d %H:%M:%S') if next_fire else 'never'
        except ValueError as e:
            when = f"invalid cron ({e})"
        flags = "" if event.enabled else " [disabled]"
        click.echo(f"  - {event.name}{flags}: {event.cron} [{event.kind.value}] next: {when}")


@cli.command()
@click.argument('event_name')
@click.pass_context
def resolve(ctx, event_name):
    """Show the audio file EVENT_NAME would play right now"""
    config = ctx.obj['config']
    event = get_event_by_name(ctx.obj['events'], event_name)
    if event is None:
        click.echo(f"Event '{event_name}' not found")
        sys.exit(1)

    resolver = AssetResolver(ctx.obj['rotation_sets'], _speech_cache(config), config.tzinfo)
    try:
        path = asyncio.run(resolver.resolve(event))
    except ReminderPlaybackError as e:
        click.echo(f"Could not resolve {event_name}: {e}")
        sys.exit(1)

    click.echo(path)
    if not os.path.exists(path):
        click.echo("  (file does not exist)")
        sys.exit(1)


@cli.command()
@click.argument('texts', nargs=-1)
@click.pass_context
def pregenerate(ctx, texts):
    """Synthesize TEXTS (or every speech event) into the cache"""
    config = ctx.obj['config']
    if not texts:
        texts = [event.content for event in get_enabled_events(ctx.obj['events'])
                 if event.kind is EventKind.SYNTHESIZED_SPEECH]
    if not texts:
        click.echo("No speech to generate")
        return

    paths = asyncio.run(_speech_cache(config).pregenerate(list(texts)))
    for path in paths:
        click.echo(f"  - {path}")
    click.echo(f"Generated {len(paths)}/{len(texts)}")
    if len(paths) < len(texts):
        sys.exit(1)


@cli.command(name='clear-cache')
@click.pass_context
def clear_cache(ctx):
    """Delete every cached speech file"""
    removed = _speech_cache(ctx.obj['config']).clear_cache()
    click.echo(f"Removed {removed} cached files")


@cli.command()
@click.pass_context
def maintenance(ctx):
    """Check whether now falls inside a maintenance window"""
    config = ctx.obj['config']
    now = datetime.now(config.tzinfo)
    window = in_maintenance_window(now, config.maintenance_windows, config.tzinfo)
    if window is not None:
        click.echo(f"In maintenance window: {window}")
    else:
        click.echo("Not in a maintenance window")


@cli.command()
@click.pass_context
def status(ctx):
    """Show system status and configuration"""
    config = ctx.obj['config']
    events = ctx.obj['events']

    click.echo("Reminder Playback System Status:")
    click.echo(f"  Token: {'set' if config.token else 'missing'}")
    click.echo(f"  Channels: {', '.join(config.channel_ids) or 'none'}")
    click.echo(f"  Timezone: {config.timezone}")
    click.echo(f"  Audio directory: {config.audio_dir}")
    click.echo(f"  Cache directory: {config.cache_dir}")
    click.echo(f"  Log level: {config.log_level}")
    click.echo(f"  Log format: {config.log_format}")
    click.echo(f"  TTS voice: {config.tts.voice} (rate {config.tts.rate}, pitch {config.tts.pitch})")
    click.echo(f"  Disconnect delay: {config.timings.disconnect_delay_s:g}s")
    windows = ", ".join(str(window) for window in config.maintenance_windows) or "none"
    click.echo(f"  Maintenance windows: {windows}")
    click.echo(f"  Events: {len(get_enabled_events(events))} enabled of {len(events)}")


if __name__ == '__main__':
    cli()
