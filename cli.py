#!/usr/bin/env python3
"""
Command-line interface for the activity recorder.

Analyzes recorded activities, replays them through the live recorder,
inspects workout plans, computes training load and reconciles orphaned
recordings left in the local sample buffer.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from analyzers import training_metrics
from analyzers.session_analyzer import SessionAnalyzer
from config import settings
from config.settings import RecorderConfig
from models.plan import parse_plan
from models.sample import Sample
from models.session import SessionConfig
from parsers.file_parser import FileParser
from plans.structure import estimate_duration, estimate_tss, flatten
from recorder.service import ActivityRecorderService
from recorder.uploader import JsonLinesExporter
from storage.sample_buffer import SampleBuffer

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Set up logging configuration.

    Args:
        verbose: Enable verbose logging
    """
    level = logging.DEBUG if verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=settings.LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for CLI commands."""
    parser = argparse.ArgumentParser(
        description='Record, replay and analyze training sessions',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s analyze ride.fit --ftp 250 --format summary
  %(prog)s replay ride.fit --plan intervals.json --ftp 250
  %(prog)s plan intervals.json --ftp 250
  %(prog)s load history.csv
  %(prog)s orphans --recover <session-id>
        """
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_athlete_args(sub):
        sub.add_argument('--ftp', type=int, help='Functional Threshold Power (W)')
        sub.add_argument('--threshold-hr', type=int, help='Threshold heart rate (bpm)')
        sub.add_argument('--max-hr', type=int, help='Maximum heart rate (bpm)')
        sub.add_argument('--threshold-pace', type=int, help='Threshold running pace (s/km)')

    analyze_parser = subparsers.add_parser('analyze', help='Analyze a recorded activity file')
    analyze_parser.add_argument('file', help='Path to the activity file (.fit or .jsonl)')
    analyze_parser.add_argument('--output', '-o', help='Output file for results (JSON format)')
    analyze_parser.add_argument('--format', choices=['json', 'summary'], default='json',
                                help='Output format (default: json)')
    add_athlete_args(analyze_parser)

    replay_parser = subparsers.add_parser('replay', help='Replay a file through the live recorder')
    replay_parser.add_argument('file', help='Path to the activity file (.fit or .jsonl)')
    replay_parser.add_argument('--plan', help='Workout plan JSON to track during the replay')
    replay_parser.add_argument('--buffer-url', default='sqlite://',
                               help='Sample buffer database URL (default: in-memory)')
    replay_parser.add_argument('--export-dir', help='Export the sealed recording as JSON lines')
    replay_parser.add_argument('--format', choices=['json', 'summary'], default='summary')
    add_athlete_args(replay_parser)

    plan_parser = subparsers.add_parser('plan', help='Flatten a workout plan and estimate its load')
    plan_parser.add_argument('file', help='Workout plan JSON')
    plan_parser.add_argument('--pace', type=float, help='Pace for distance steps (m/s)')
    add_athlete_args(plan_parser)

    load_parser = subparsers.add_parser('load', help='Compute CTL/ATL/TSB from a TSS history CSV')
    load_parser.add_argument('file', help='CSV with "date" and "tss" columns')
    load_parser.add_argument('--days', type=int, default=14, help='Number of trailing days to print')
    load_parser.add_argument('--until', help='Extend the history with rest days up to this date')

    orphans_parser = subparsers.add_parser('orphans', help='List or reconcile orphaned recordings')
    orphans_parser.add_argument('--buffer-url', help='Sample buffer database URL')
    group = orphans_parser.add_mutually_exclusive_group()
    group.add_argument('--recover', metavar='SESSION_ID', help='Seal an orphaned session')
    group.add_argument('--discard', metavar='SESSION_ID', help='Delete an orphaned session')
    orphans_parser.add_argument('--export-dir', help='Export recovered samples as JSON lines')

    config_parser = subparsers.add_parser('config', help='Manage configuration')
    config_parser.add_argument('--show', action='store_true', help='Show current configuration')

    return parser


def _load_samples(file_path: str) -> List[Sample]:
    samples = FileParser().parse_file(Path(file_path))
    if not samples:
        raise ValueError(f"Failed to parse file: {file_path}")
    return samples


def _athlete(args) -> SessionConfig:
    return SessionConfig(
        ftp=args.ftp if args.ftp is not None else settings.FTP,
        threshold_hr=args.threshold_hr if args.threshold_hr is not None else settings.THRESHOLD_HR,
        max_hr=args.max_hr if args.max_hr is not None else settings.MAX_HEART_RATE,
        threshold_pace=(args.threshold_pace if args.threshold_pace is not None
                        else settings.THRESHOLD_PACE),
    )


def _read_plan(file_path: str):
    with open(file_path, 'r', encoding='utf-8') as fh:
        return parse_plan(json.load(fh))


def analyze_file(file_path: str, athlete: SessionConfig) -> dict:
    """
    Analyze a single activity file.

    Args:
        file_path: Path to the activity file
        athlete: Athlete thresholds

    Returns:
        Analysis results as dictionary
    """
    samples = _load_samples(file_path)
    analyzer = SessionAnalyzer(ftp=athlete.ftp, threshold_hr=athlete.threshold_hr,
                               threshold_pace=athlete.threshold_pace)
    return analyzer.analyze_session(samples)


class ReplayClock:
    """Clock advanced by the replayed sample timestamps."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def replay_file(file_path: str, athlete: SessionConfig, plan_path: Optional[str] = None,
                buffer_url: str = 'sqlite://', export_dir: Optional[str] = None) -> dict:
    """Feed a recorded file through the recorder as if it were live."""
    samples = _load_samples(file_path)
    clock = ReplayClock()
    clock.now = samples[0].timestamp

    buffer = SampleBuffer(buffer_url)
    service = ActivityRecorderService(buffer, clock=clock)

    plan_estimate = None
    if plan_path:
        plan = _read_plan(plan_path)
        service.select_plan(plan)
        plan_estimate = estimate_tss(flatten(plan), athlete.ftp, athlete.threshold_hr)

    service.start(athlete)
    for sample in samples:
        clock.now = max(clock.now, sample.timestamp)
        service.on_sensor_sample(sample)

    # The last sample covers one more interval of session time
    clock.now = max(clock.now, samples[-1].timestamp + RecorderConfig.DEFAULT_SAMPLE_INTERVAL_S)
    service.tick()
    adherence = service.get_snapshot().adherence
    uploader = JsonLinesExporter(Path(export_dir)) if export_dir else None
    sealed = service.stop(uploader=uploader)
    buffer.close()

    analyzer = SessionAnalyzer(ftp=athlete.ftp, threshold_hr=athlete.threshold_hr,
                               threshold_pace=athlete.threshold_pace)
    results = analyzer.analyze_session(
        sealed, plan_estimate=plan_estimate,
        adherence_score=adherence.score if adherence is not None else None,
    )
    if adherence is not None:
        results['adherence'] = {
            'state': adherence.state.value,
            'step_index': adherence.step_index,
            'step_count': adherence.step_count,
            'score': adherence.score,
        }
    return results


def describe_plan(file_path: str, athlete: SessionConfig, pace: Optional[float] = None) -> dict:
    plan = _read_plan(file_path)
    steps = flatten(plan)
    duration = estimate_duration(steps, pace)
    estimate = estimate_tss(steps, athlete.ftp, athlete.threshold_hr, pace)
    return {
        'name': plan.name,
        'steps': [
            {
                'index': index,
                'name': step.name,
                'segment': step.segment_name,
                'repetition': step.segment_index,
                'duration': repr(step.duration),
            }
            for index, step in enumerate(steps)
        ],
        'estimated_duration_s': duration.seconds,
        'incomplete_steps': list(duration.incomplete_steps),
        'estimated_tss': estimate.tss if estimate else None,
        'estimated_if': estimate.intensity_factor if estimate else None,
    }


def training_load_from_csv(file_path: str, until: Optional[str] = None) -> pd.DataFrame:
    history = pd.read_csv(file_path, parse_dates=['date'])
    daily = history.groupby(history['date'].dt.normalize())['tss'].sum()
    end = pd.Timestamp(until) if until else None
    return training_metrics.training_load_series(daily, end=end)


def reconcile_orphans(buffer_url: Optional[str], recover: Optional[str] = None,
                      discard: Optional[str] = None, export_dir: Optional[str] = None) -> List[str]:
    buffer = SampleBuffer(buffer_url)
    try:
        service = ActivityRecorderService(buffer)
        if recover:
            sealed = service.recover_or_discard(recover, recover=True)
            print(f"Recovered session {recover} with {sealed.sample_count} samples")
            if export_dir:
                JsonLinesExporter(Path(export_dir)).upload(sealed)
        elif discard:
            service.recover_or_discard(discard, recover=False)
            print(f"Discarded session {discard}")
        return service.list_orphaned()
    finally:
        buffer.close()


def show_config():
    """Display current configuration."""
    print("Current Configuration:")
    print("-" * 30)
    config_dict = {
        'FTP': settings.FTP,
        'THRESHOLD_HR': settings.THRESHOLD_HR,
        'MAX_HEART_RATE': settings.MAX_HEART_RATE,
        'THRESHOLD_PACE': settings.THRESHOLD_PACE,
        'DATA_DIR': settings.DATA_DIR,
        'BUFFER_DATABASE_URL': settings.BUFFER_DATABASE_URL,
        'LOG_LEVEL': settings.LOG_LEVEL,
    }

    for key, value in config_dict.items():
        print(f"{key}: {value}")


def _fmt(value, spec: str = '.0f', unit: str = '') -> str:
    if value is None:
        return '--'
    return f"{value:{spec}}{unit}"


def print_summary(results: dict):
    """Print a human-readable summary of the analysis."""
    summary = results.get('summary', {})

    print("\n" + "=" * 50)
    print("SESSION SUMMARY")
    print("=" * 50)

    print(f"Moving Time: {_fmt(summary.get('moving_seconds', 0) / 60, '.1f', ' min')}")
    print(f"Distance: {_fmt(summary.get('distance_km'), '.2f', ' km')}")
    print(f"Average Power: {_fmt(summary.get('avg_power'), '.0f', ' W')}")
    print(f"Normalized Power: {_fmt(summary.get('normalized_power'), '.0f', ' W')}")
    print(f"Intensity Factor: {_fmt(summary.get('intensity_factor'), '.2f')}")
    print(f"TSS: {_fmt(summary.get('training_stress_score'), '.0f')}")
    if summary.get('running_tss') is not None:
        print(f"rTSS: {_fmt(summary.get('running_tss'), '.0f')}")
    print(f"Average Heart Rate: {_fmt(summary.get('avg_hr'), '.0f', ' bpm')}")
    print(f"Elevation Gain: {_fmt(summary.get('elevation_gain_m'), '.0f', ' m')}")
    print(f"VAM: {_fmt(summary.get('vam'), '.0f', ' m/h')}")

    efficiency = results.get('efficiency', {})
    print(f"Decoupling: {_fmt(efficiency.get('decoupling'), '.1f', '%')}")

    zones = results.get('zones', {})
    if 'power' in zones:
        print("\nPower Zone Distribution:")
        for zone, pct in zones['power']['percent'].items():
            print(f"  {zone}: {pct:.1f}% ({zones['power']['seconds'][zone] / 60:.1f} min)")

    adherence = results.get('adherence')
    if adherence:
        print(f"\nPlan: step {adherence['step_index'] + 1}/{adherence['step_count']} "
              f"({adherence['state']}), adherence {_fmt((adherence['score'] or 0) * 100, '.0f', '%')}")

    compliance = results.get('plan_compliance')
    if compliance:
        print(f"Plan compliance: {compliance['overall_score']:.0f}%")

    print("=" * 50)


def _emit(results: dict, output_format: str, output: Optional[str] = None):
    if output_format == 'summary':
        print_summary(results)
        return
    text = json.dumps(results, indent=2, default=str)
    if output:
        with open(output, 'w') as f:
            f.write(text)
        print(f"Analysis complete. Results saved to {output}")
    else:
        print(text)


def main():
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return

    try:
        if args.command == 'analyze':
            results = analyze_file(args.file, _athlete(args))
            _emit(results, args.format, args.output)

        elif args.command == 'replay':
            results = replay_file(args.file, _athlete(args), plan_path=args.plan,
                                  buffer_url=args.buffer_url, export_dir=args.export_dir)
            _emit(results, args.format)

        elif args.command == 'plan':
            print(json.dumps(describe_plan(args.file, _athlete(args), args.pace), indent=2, default=str))

        elif args.command == 'load':
            series = training_load_from_csv(args.file, args.until)
            print(series.tail(args.days).round(1).to_string())
            if not series.empty:
                last = series.iloc[-1]
                load = training_metrics.TrainingLoad(ctl=last['ctl'], atl=last['atl'], tsb=last['tsb'])
                print(json.dumps(training_metrics.analyze_training_load(load), indent=2))

        elif args.command == 'orphans':
            orphans = reconcile_orphans(args.buffer_url, args.recover, args.discard, args.export_dir)
            if orphans:
                print("Orphaned sessions:")
                for session_id in orphans:
                    print(f"  {session_id}")
            else:
                print("No orphaned sessions.")

        elif args.command == 'config':
            show_config()

    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
