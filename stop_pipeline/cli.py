#!/usr/bin/env python3
"""
Delivery Stop Pipeline CLI

Command-line interface for turning an order spreadsheet into a deduplicated
list of delivery stops, and for recording manual coordinate corrections.
"""

import sys
import argparse
import logging
from datetime import datetime
from pathlib import Path

import pandas as pd
from tqdm import tqdm

from stop_pipeline.cache.learned_locations import (
    LearnedLocationCache,
    SqliteLearnedLocationStore,
    create_learned_location_store,
)
from stop_pipeline.config_manager import ConfigManager, PipelineConfig
from stop_pipeline.errors import PipelineError, StructuralError
from stop_pipeline.pipeline import Pipeline
from stop_pipeline.utils.exporter import write_records
from stop_pipeline.utils.order_loader import OrderLoader

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stop-pipeline",
        description="Delivery Stop Pipeline - Reconcile order addresses and group them into stops",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run pipeline on a spreadsheet
  %(prog)s orders.xlsx --output stops.xlsx

  # Use custom configuration
  %(prog)s orders.csv --config my_config.yaml

  # Run without calling the geocoder (learned + spreadsheet coordinates only)
  %(prog)s orders.csv --no-geocode

  # Apply corrections (learning_key/signature, latitude, longitude) after the run
  %(prog)s orders.csv --corrections fixes.csv

  # Record one manual correction
  %(prog)s --learn rua_exemplo_123_centro_sao_paulo_sp -23.550520 -46.633308

  # Show learned location statistics
  %(prog)s --stats
        """
    )

    # Input/Output options
    parser.add_argument(
        'input_file',
        nargs='?',
        type=Path,
        help='Input CSV/Excel file with order rows'
    )
    parser.add_argument(
        '-o', '--output',
        type=Path,
        help='Output .csv or .xlsx file for stops (default: OUTPUT_DIR/stops_TIMESTAMP.csv)'
    )
    parser.add_argument(
        '-r', '--review-queue',
        type=Path,
        help='Output file for pending stops that need manual placement'
    )

    # Configuration options
    parser.add_argument(
        '-c', '--config',
        type=Path,
        help='Pipeline configuration YAML file (default: use built-in config)'
    )
    parser.add_argument(
        '--learned-store',
        type=Path,
        help='Learned location store path (overrides config)'
    )
    parser.add_argument(
        '--backend',
        choices=['json', 'sqlite', 'memory'],
        help='Learned location store backend (overrides config)'
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        help='Rows per batch (overrides config)'
    )
    parser.add_argument(
        '--no-geocode',
        action='store_true',
        help='Do not call the geocoding provider'
    )
    parser.add_argument(
        '--init-config',
        type=Path,
        metavar='OUTPUT',
        help='Write an example configuration file and exit'
    )

    # Learned location operations
    parser.add_argument(
        '--corrections',
        type=Path,
        help='CSV/Excel of manual corrections applied to stops after the run'
    )
    parser.add_argument(
        '--learn',
        nargs=3,
        metavar=('KEY', 'LAT', 'LNG'),
        help='Record a learned location and exit'
    )
    parser.add_argument(
        '--export-learned',
        type=Path,
        metavar='OUTPUT',
        help='Export all learned locations and exit'
    )
    parser.add_argument(
        '--stats',
        action='store_true',
        help='Show learned location statistics and exit'
    )

    # Output options
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Minimal output (errors only)'
    )
    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable progress indicators'
    )
    return parser


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def load_config(args) -> PipelineConfig:
    """Load the configuration file (or defaults) and apply CLI overrides."""
    if args.config:
        config = ConfigManager(args.config).load()
    else:
        config = PipelineConfig()

    if args.backend:
        config.learned_store.backend = args.backend
    if args.learned_store:
        config.learned_store.path = args.learned_store
    if args.batch_size:
        config.batch_size = args.batch_size
    if args.no_geocode:
        config.geocoder.enabled = False

    return config


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose, args.quiet)

    if args.init_config:
        ConfigManager().save_example_config(args.init_config)
        if not args.quiet:
            print(f"✅ Example configuration written to {args.init_config}")
        return 0

    # Validate arguments
    if not args.input_file and not args.learn and not args.stats and not args.export_learned:
        parser.error("input_file is required unless using --learn, --stats, --export-learned or --init-config")

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Error: Invalid configuration: {e}", file=sys.stderr)
        return 1

    # Handle learned location operations
    if args.learn or args.stats or args.export_learned:
        try:
            repository = create_learned_location_store(
                backend=config.learned_store.backend,
                path=config.learned_store.path,
            )
        except ValueError as e:
            print(f"❌ Error: {e}", file=sys.stderr)
            return 1

        if args.learn:
            key, lat, lng = args.learn
            try:
                entry = LearnedLocationCache(repository).save_learned_location(key, lat, lng)
            except ValueError as e:
                print(f"❌ Error: {e}", file=sys.stderr)
                return 1
            if not args.quiet:
                print(f"✅ Learned {key} -> {entry.lat:.6f}, {entry.lng:.6f}")
            return 0

        if args.stats:
            show_statistics(repository)
            return 0

        export_learned(repository, args.export_learned, args.quiet)
        return 0

    # Validate input file
    if not args.input_file.exists():
        print(f"❌ Error: Input file not found: {args.input_file}", file=sys.stderr)
        return 1

    # Load orders
    if not args.quiet:
        print(f"📊 Loading orders from {args.input_file}...")

    try:
        rows = OrderLoader().load(args.input_file)
    except StructuralError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1
    except (ValueError, OSError) as e:
        print(f"❌ Error loading orders: {e}", file=sys.stderr)
        return 1

    if not args.quiet:
        print(f"   Loaded {len(rows)} rows")

    # Create pipeline
    try:
        pipeline = Pipeline.from_config(config)
    except ValueError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1

    # Run pipeline
    if not args.quiet:
        print("\n🚀 Running pipeline...")

    progress = tqdm(
        total=len(rows),
        desc="Reconciling",
        unit="row",
        disable=args.quiet or args.no_progress,
    )

    def on_batch(done, total, batch_index, batch_count):
        progress.update(done - progress.n)
        progress.set_postfix(batch=f"{batch_index}/{batch_count}")

    try:
        result = pipeline.run(rows, progress_callback=on_batch)
    except PipelineError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1
    finally:
        progress.close()

    if args.corrections:
        try:
            applied = apply_corrections(pipeline, result, args.corrections)
        except (ValueError, OSError, KeyError) as e:
            print(f"❌ Error applying corrections: {e}", file=sys.stderr)
            return 1
        if not args.quiet:
            print(f"✏️  Applied {applied} manual correction(s)")

    if not args.quiet:
        print_summary(result)

    # Export results
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    output_path = args.output or config.output_dir / f'stops_{timestamp}.csv'

    try:
        count = pipeline.export_results(result, output_path)
        if args.review_queue:
            review_count = pipeline.generate_review_queue(result, args.review_queue)
    except (ValueError, OSError) as e:
        print(f"❌ Error exporting results: {e}", file=sys.stderr)
        return 1

    if not args.quiet:
        print(f"\n📁 Exported {count} stops to {output_path}")
        if args.review_queue:
            print(f"📁 Generated review queue with {review_count} stops at {args.review_queue}")

    return 0


def apply_corrections(pipeline: Pipeline, result, corrections_path: Path) -> int:
    """Apply a corrections sheet to the stops of a run.

    The sheet needs latitude and longitude columns plus learning_key or
    signature to identify the stop. Rows with an unusable coordinate are
    logged and skipped.
    """
    if corrections_path.suffix.lower() in {'.xlsx', '.xls'}:
        df = pd.read_excel(corrections_path, dtype=str)
    else:
        df = pd.read_csv(corrections_path, dtype=str)

    if 'learning_key' not in df.columns and 'signature' not in df.columns:
        raise ValueError("Corrections need a learning_key or signature column")
    if 'latitude' not in df.columns or 'longitude' not in df.columns:
        raise ValueError("Corrections need latitude and longitude columns")

    by_key = {stop.learning_key: stop for stop in result.stops}
    by_signature = {stop.signature: stop for stop in result.stops}

    applied = 0
    for record in df.to_dict(orient='records'):
        stop = None
        if isinstance(record.get('learning_key'), str):
            stop = by_key.get(record['learning_key'].strip())
        if stop is None and isinstance(record.get('signature'), str):
            stop = by_signature.get(record['signature'].strip())
        if stop is None:
            logger.warning(f"No stop matches correction {record}")
            continue

        try:
            pipeline.apply_manual_correction(stop, record.get('latitude'), record.get('longitude'))
        except ValueError as e:
            logger.warning(f"Skipping correction for {stop.signature}: {e}")
            continue
        applied += 1

    return applied


def print_summary(result):
    """Print run summary."""
    stats = result.to_dict()

    print("\n" + "="*60)
    print("✅ Pipeline complete!")
    print("="*60)
    print(f"Rows:              {stats['total_rows']}")
    print(f"Packages:          {stats['total_packages']}")
    print(f"Stops:             {stats['total_stops']}")
    print(f"Learned Stops:     {stats['learned_stops']}")
    print(f"Dropped Rows:      {stats['dropped_rows']}")
    print()
    print("Status Distribution:")
    for status, count in sorted(stats['stop_statuses'].items()):
        percentage = count / stats['total_stops'] * 100 if stats['total_stops'] > 0 else 0
        print(f"  {status:20s}: {count:4d} ({percentage:5.1f}%)")
    print("="*60)


def show_statistics(repository):
    """Show learned location statistics."""
    entries = repository.all()

    print("\n" + "="*60)
    print("📊 Learned Location Statistics")
    print("="*60)
    print(f"Total Entries:     {len(entries)}")

    if isinstance(repository, SqliteLearnedLocationStore):
        stats = repository.get_statistics()
        print(f"Oldest Update:     {stats['oldest_updated_at']}")
        print(f"Newest Update:     {stats['newest_updated_at']}")
    elif entries:
        updated = [entry.updated_at for entry in entries.values()]
        print(f"Oldest Update:     {min(updated)}")
        print(f"Newest Update:     {max(updated)}")
    print("="*60)


def export_learned(repository, output_path: Path, quiet=False):
    """Export all learned locations."""
    entries = repository.all()

    if not entries:
        print("⚠️  No learned locations to export")
        return

    records = [
        {
            "learning_key": key,
            "latitude": f"{entry.lat:.6f}",
            "longitude": f"{entry.lng:.6f}",
            "updated_at": entry.updated_at,
        }
        for key, entry in sorted(entries.items())
    ]
    write_records(records, output_path)

    if not quiet:
        print(f"✅ Exported {len(records)} learned locations to {output_path}")


if __name__ == '__main__':
    sys.exit(main())
