# leakscope/cli.py - Command-line interface
"""
Command-line interface for the leakscope profiling engine.

State lives in a JSON state file between invocations, so batches can be
ingested by one command and queried by the next.
"""

import click
import json
import logging
import sys
from pathlib import Path

from leakscope.utils.logger import setup_logging
from leakscope.utils.config import Config
from leakscope.utils.helpers import parse_tags, parse_time, read_batches
from leakscope.errors import ConfigError


logger = logging.getLogger(__name__)

PROFILE_TYPES = [
    'cpu-time', 'alloc-objects', 'alloc-space', 'inuse-objects', 'inuse-space',
    'concurrent-task-count', 'lock-contention-count', 'lock-contention-duration',
    'block-count', 'block-duration',
]


class TimeParam(click.ParamType):
    """POSIX seconds or ISO-8601 timestamp"""
    name = 'time'

    def convert(self, value, param, ctx):
        if isinstance(value, float):
            return value
        try:
            return parse_time(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


TIME = TimeParam()


class ReplayClock:
    """
    Clock for replaying recorded batches.

    Reads the pinned time until replay starts, then the newest window end
    seen so far, so every batch lands while its bucket is still live.
    """

    def __init__(self, now: float):
        self.now = now
        self.replayed = None

    def __call__(self) -> float:
        return self.now if self.replayed is None else self.replayed

    def advance(self, raw):
        end = raw.get('windowEnd', raw.get('window_end')) if isinstance(raw, dict) else None
        if isinstance(end, (int, float)) and not isinstance(end, bool):
            self.replayed = end if self.replayed is None else max(self.replayed, end)

    def finish(self):
        """Settle on the later of the pinned time and the replayed one."""
        if self.replayed is not None:
            self.now = max(self.now, self.replayed)
            self.replayed = None

    def follow(self, batches):
        for raw in batches:
            self.advance(raw)
            yield raw


def _build_engine(ctx):
    """Create the engine from the group options and load saved state."""
    from leakscope.engine import ProfilingEngine

    obj = ctx.obj
    try:
        cfg = Config(obj['config'])
        clock = ReplayClock(obj['now']) if obj['now'] is not None else None
        engine = ProfilingEngine(cfg, clock=clock) if clock else ProfilingEngine(cfg)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    obj['clock'] = clock
    state = obj['state']
    if Path(state).exists():
        engine.load(state)
    return engine


def _tags(values):
    try:
        return parse_tags(values)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--tag')


def _unit(profile_type: str) -> str:
    from leakscope.collector.models import ProfileType
    return ProfileType.parse(profile_type).unit


@click.group()
@click.option('--log-level', default='INFO', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']))
@click.option('--log-file', type=click.Path(), help='Log file path')
@click.option('--config', type=click.Path(), default='configs/default.yaml', help='Configuration file')
@click.option('--state', type=click.Path(), default='leakscope-state.json', help='State file')
@click.option('--now', type=TIME, help='Pin the engine clock (replaying recorded batches)')
@click.option('--no-color', is_flag=True, help='Disable colored output')
@click.pass_context
def cli(ctx, log_level, log_file, config, state, now, no_color):
    """
    leakscope - continuous profiling leak detector

    Aggregates profile samples into call trees, diffs time ranges and
    flags sustained growth.
    """
    ctx.ensure_object(dict)

    setup_logging(level=log_level, log_file=log_file, use_colors=not no_color)

    ctx.obj['config'] = config
    ctx.obj['state'] = state
    ctx.obj['now'] = now
    ctx.obj['colors'] = not no_color


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True))
@click.option('--compact/--no-compact', default=True, help='Run a compaction pass after ingesting')
@click.pass_context
def ingest(ctx, files, compact):
    """
    Ingest JSON-lines batch files into the state file.

    With --now the clock follows the batch windows while replaying and
    settles on the later of --now and the newest window end afterwards.

    Example:
        leakscope --now 1700000600 ingest batches.jsonl
    """
    engine = _build_engine(ctx)
    clock = ctx.obj['clock']

    accepted = 0
    for path in files:
        batches = read_batches(path)
        if clock is not None:
            batches = clock.follow(batches)
        reports = engine.ingest_stream(batches)
        accepted += len(reports)
    if clock is not None:
        clock.finish()

    if compact:
        engine.store.compact()
    engine.save(ctx.obj['state'])

    stats = engine.pipeline.get_stats()
    click.echo(f"Batches accepted: {accepted}, rejected: {stats['rejected_batches']}")
    click.echo(f"Samples merged: {stats['samples_merged']}, malformed: {stats['malformed_samples']}, "
               f"dropped: {stats['dropped_samples']}")
    click.echo(f"Late samples: {engine.store.get_stats()['late_samples']}")


@cli.command()
@click.option('--target', required=True, help='Target id')
@click.option('--type', 'profile_type', required=True, type=click.Choice(PROFILE_TYPES), help='Profile type')
@click.option('--tag', 'tag_values', multiple=True, help='Tag as key=value (repeatable)')
@click.option('--start', required=True, type=TIME, help='Range start')
@click.option('--end', required=True, type=TIME, help='Range end (exclusive)')
@click.option('--format', 'output_format', type=click.Choice(['stdout', 'json', 'collapsed']),
              help='Output format (defaults to output.format)')
@click.option('--output', type=click.Path(), help='Output file (json / collapsed formats)')
@click.option('--top', 'top_n', type=click.IntRange(min=1), help='List the N frames with the most self value')
@click.pass_context
def tree(ctx, target, profile_type, tag_values, start, end, output_format, output, top_n):
    """
    Show the merged call tree of a range.

    Example:
        leakscope tree --target api-1 --type inuse-space --start 1700000000 --end 1700003600
    """
    from leakscope.collector.models import TimeRange
    from leakscope.exporters.json_exporter import JSONExporter
    from leakscope.exporters.render import to_collapsed, top_frames
    from leakscope.exporters.stdout import StdoutExporter

    engine = _build_engine(ctx)
    tags = _tags(tag_values)

    result = engine.query.get_tree(target, profile_type, tags, (start, end))
    if not result.ok:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)
    if not engine.query.target_exists(target):
        click.echo(f"Note: target {target} has never been ingested", err=True)
    if result.partial:
        click.echo("Warning: partial result (deadline exceeded)", err=True)
    for gap_start, gap_end in result.coverage_gaps:
        click.echo(f"Warning: no data for [{gap_start:.0f}, {gap_end:.0f})", err=True)

    output_format = output_format or engine.config.get('output.format')
    if top_n:
        merged = engine.store.read(target, profile_type, tags, TimeRange(start, end)).tree
        frames = top_frames(merged, top_n)
        if output_format == 'json':
            click.echo(json.dumps([
                {'frame': frame.name, 'location': frame.location, 'selfValue': value}
                for frame, value in frames
            ], indent=2))
        else:
            StdoutExporter(use_colors=ctx.obj['colors'], unit=_unit(profile_type)).print_top_frames(
                frames, merged.total, title=f"{target} {profile_type} top frames"
            )
        return

    if output_format == 'json':
        if output:
            JSONExporter(str(Path(output).parent)).export_result(result, 'tree', Path(output).name)
        else:
            click.echo(json.dumps(result.to_dict(), indent=2))
    elif output_format == 'collapsed':
        merged = engine.store.read(target, profile_type, tags, TimeRange(start, end)).tree
        if output:
            JSONExporter(str(Path(output).parent)).export_collapsed(merged, Path(output).name)
        else:
            click.echo(to_collapsed(merged))
    else:
        StdoutExporter(use_colors=ctx.obj['colors'], unit=_unit(profile_type)).print_tree(
            result.data, title=f"{target} {profile_type}"
        )


@cli.command()
@click.option('--target', required=True, help='Target id')
@click.option('--type', 'profile_type', required=True, type=click.Choice(PROFILE_TYPES), help='Profile type')
@click.option('--tag', 'tag_values', multiple=True, help='Tag as key=value (repeatable)')
@click.option('--baseline', nargs=2, required=True, type=TIME, help='Baseline START END')
@click.option('--current', nargs=2, required=True, type=TIME, help='Current START END')
@click.option('--format', 'output_format', type=click.Choice(['stdout', 'json']),
              help='Output format (defaults to output.format)')
@click.pass_context
def diff(ctx, target, profile_type, tag_values, baseline, current, output_format):
    """
    Compare two ranges of a series.

    Example:
        leakscope diff --target api-1 --type inuse-space \\
            --baseline 1700000000 1700000600 --current 1700003000 1700003600
    """
    from leakscope.exporters.stdout import StdoutExporter

    engine = _build_engine(ctx)
    result = engine.query.get_diff(target, profile_type, _tags(tag_values), baseline, current)
    if not result.ok:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)
    output_format = output_format or engine.config.get('output.format')

    if output_format == 'json':
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        StdoutExporter(use_colors=ctx.obj['colors'], unit=_unit(profile_type)).print_diff(
            result.data, title=f"{target} {profile_type} diff"
        )


@cli.command()
@click.option('--format', 'output_format', type=click.Choice(['stdout', 'json']),
              help='Output format (defaults to output.format)')
@click.pass_context
def score(ctx, output_format):
    """
    Run one scoring cycle over every series and print the alerts.
    """
    from leakscope.exporters.stdout import StdoutExporter

    engine = _build_engine(ctx)
    engine.store.seal_expired()
    alerts = [alert.to_dict() for alert in engine.scorer.run_cycle()]
    output_format = output_format or engine.config.get('output.format')

    if output_format == 'json':
        click.echo(json.dumps(alerts, indent=2))
    else:
        StdoutExporter(use_colors=ctx.obj['colors']).print_alerts(alerts)


@cli.command()
@click.option('--target', help='Only alerts of this target')
@click.option('--type', 'profile_type', type=click.Choice(PROFILE_TYPES), help='Only alerts of this profile type')
@click.option('--since', type=TIME, default=0.0, help='Only alerts created at or after this time')
@click.option('--output', type=click.Path(), help='Export alerts to a JSON file')
@click.pass_context
def alerts(ctx, target, profile_type, since, output):
    """
    Score the state file and list matching leak alerts.

    Example:
        leakscope alerts --target api-1 --output alerts.json
    """
    from leakscope.exporters.json_exporter import JSONExporter
    from leakscope.exporters.stdout import StdoutExporter

    engine = _build_engine(ctx)
    engine.store.seal_expired()
    engine.scorer.run_cycle()

    result = engine.query.list_alerts(target, profile_type, since)
    if not result.ok:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)

    if output:
        path = JSONExporter(str(Path(output).parent)).export_alerts(result.data, Path(output).name)
        click.echo(f"Exported {len(result.data)} alerts to {path}")
    else:
        StdoutExporter(use_colors=ctx.obj['colors']).print_alerts(result.data)


@cli.command()
@click.pass_context
def compact(ctx):
    """
    Seal, consolidate and evict buckets, then save the state file.
    """
    engine = _build_engine(ctx)
    report = engine.store.compact()
    engine.save(ctx.obj['state'])
    click.echo(f"Sealed: {report.sealed}, consolidated: {report.consolidated}, "
               f"evicted: {report.evicted}, removed series: {report.removed_series}")


@cli.command()
@click.pass_context
def stats(ctx):
    """
    Show store statistics for the state file.
    """
    from leakscope.exporters.stdout import StdoutExporter

    engine = _build_engine(ctx)
    StdoutExporter(use_colors=ctx.obj['colors']).print_stats({
        'store': engine.store.get_stats(),
        'targets': ', '.join(sorted({k.target_id for k in engine.store.keys()})) or '-',
    })


@cli.command('check-config')
@click.argument('config_file', type=click.Path(exists=True))
def check_config(config_file):
    """
    Validate a configuration file.

    Example:
        leakscope check-config configs/default.yaml
    """
    from leakscope.engine import ProfilingEngine

    try:
        ProfilingEngine(Config(config_file))
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ {config_file} is valid")


if __name__ == '__main__':
    cli(obj={})
