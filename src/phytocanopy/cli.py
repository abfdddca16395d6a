# src/phytocanopy/cli.py

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from phytocanopy.exceptions import PhytocanopyError

def setup_logging(level: int = logging.INFO) -> None:
    """
    Configures the standard logging format and level for the command-line interface.

    Args:
        level (int): The logging threshold level.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

def run_process(args: argparse.Namespace) -> int:
    """
    Resolves the pipeline configuration from the environment and the command line,
    then runs the canopy processing chain on the requested file.

    Returns:
        int: Process exit code.
    """
    from phytocanopy.config import load_config
    from phytocanopy.pipeline import process_lidar_data

    try:
        config = load_config(
            env_file=args.env_file,
            resolution=args.res,
            output_dir=args.output_dir,
            crs=args.crs,
            workers=args.workers
        )
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        return 2

    if args.no_write:
        config.write_outputs = False

    try:
        result = process_lidar_data(args.las_path, config=config)
    except FileNotFoundError as e:
        logging.error(str(e))
        return 1
    except (PhytocanopyError, ValueError, MemoryError) as e:
        logging.error(f"Processing failed: {e}")
        return 1

    logging.info(
        f"Done: {len(result.treetops)} treetops, {len(result.crowns)} crowns, "
        f"{result.chm.width}x{result.chm.height} grid"
    )
    for name, path in result.written.items():
        logging.info(f"  {name}: {path}")
    return 0

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phytocanopy",
        description="Lidar canopy products: height models, canopy metrics and tree crowns"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process",
        help="Runs the full processing chain on a LAS/LAZ file."
    )
    process_parser.add_argument(
        "las_path",
        type=Path,
        help="Input .las or .laz file."
    )
    process_parser.add_argument(
        "--res",
        type=float,
        default=None,
        help="Grid resolution in CRS units. Defaults to 1.0 or PHYTOCANOPY_RESOLUTION."
    )
    process_parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory receiving the products. Defaults to ~/lidar_output."
    )
    process_parser.add_argument(
        "--crs",
        type=str,
        default=None,
        help="CRS override (e.g. EPSG:32618) when the LAS header has none."
    )
    process_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Threads used for the per-cell canopy metrics."
    )
    process_parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Explicit .env file holding PHYTOCANOPY_* variables."
    )
    process_parser.add_argument(
        "--no-write",
        action="store_true",
        help="Computes every product without writing it to disk."
    )
    process_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enables debug logging."
    )
    return parser

def main(argv: Optional[List[str]] = None) -> None:
    """
    Parses command-line arguments and routes execution to the appropriate subroutine.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "process":
        sys.exit(run_process(args))

if __name__ == "__main__":
    main()
