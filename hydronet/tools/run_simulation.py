#!/usr/bin/env python3
"""
Run Extended-Period Hydraulic Simulations from EPANET INP files.

Loads each network into the editor's graph store, validates it, serializes
it back to INP and steps it through EPANET, printing a summary per network.

Usage:
    python -m hydronet.tools.run_simulation network.inp
    python -m hydronet.tools.run_simulation a.inp b.inp --report-dir reports/ --timeout 60
"""

import argparse
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from hydronet.core.engine import SimulationDriver, run_with_timeout
from hydronet.core.exceptions import HydroNetError
from hydronet.core.history import export_report_csv, snapshot_stats
from hydronet.core.network_io import load_inp, save_geojson
from hydronet.core.validation import validate_network


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )


def run_one(path: Path, args, logger: logging.Logger) -> bool:
    store = load_inp(path)

    validation = validate_network(store)
    for issue in validation.issues:
        log = logger.error if issue.level == 'error' else logger.warning
        log(f"{path.name}: {issue.message}")
    if args.validate_only:
        return validation.is_valid

    if args.geojson_dir:
        save_geojson(store, Path(args.geojson_dir) / f"{path.stem}.geojson")

    if args.timeout:
        history = run_with_timeout(store, args.timeout)
    else:
        history = SimulationDriver().run(store)

    last = history[len(history) - 1]
    stats = snapshot_stats(last)
    print("-" * 70)
    print(f"  Network:       {path.name}")
    print(f"  Nodes / Links: {len(last.nodes)} / {len(last.links)}")
    print(f"  Time steps:    {len(history)} (t = {history.timestamps[0]}s .. {history.timestamps[-1]}s)")
    print(f"  Pressure:      {stats.min_pressure:.2f} .. {stats.max_pressure:.2f}")
    print(f"  Velocity:      {stats.min_velocity:.2f} .. {stats.max_velocity:.2f}")

    if args.report_dir:
        report = export_report_csv(history, Path(args.report_dir) / f"{path.stem}_report.csv")
        print(f"  Report:        {report}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description='Extended-period hydraulic simulation of EPANET networks',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        'inputs',
        nargs='+',
        type=Path,
        help='EPANET INP file(s)'
    )

    parser.add_argument(
        '--timeout', '-t',
        type=float,
        default=None,
        help='Give up on a network after this many seconds'
    )

    parser.add_argument(
        '--report-dir', '-r',
        type=str,
        default=None,
        help='Write a CSV results report per network into this directory'
    )

    parser.add_argument(
        '--geojson-dir',
        type=str,
        default=None,
        help='Also export each network as GeoJSON into this directory'
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Only check the networks, do not simulate'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose logging'
    )

    args = parser.parse_args()
    setup_logging(args.verbose)

    logger = logging.getLogger(__name__)

    print("=" * 70)
    print("   HYDRAULIC SIMULATION")
    print("=" * 70)

    failures = 0
    inputs = tqdm(args.inputs, desc="Networks", unit="net") if len(args.inputs) > 1 else args.inputs
    for path in inputs:
        try:
            if not run_one(path, args, logger):
                failures += 1
        except HydroNetError as e:
            logger.error(f"{path.name}: {e}")
            details = getattr(e, 'details', None)
            if details:
                logger.debug(details)
            failures += 1
        except (OSError, ValueError) as e:
            logger.error(f"Could not load {path}: {e}")
            failures += 1

    print("=" * 70)
    print(f"  {len(args.inputs) - failures}/{len(args.inputs)} network(s) succeeded")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
