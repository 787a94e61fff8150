#!/usr/bin/env python3
"""
CLI for xkt-convert

Command-line interface for converting glTF, IFC, LAS/LAZ, PCD, PLY, STL and CityJSON files into .xkt.
"""

import argparse
import logging
import sys
import traceback

from xkt_convert import __version__
from xkt_convert.converter import SUPPORTED_FORMATS, UnsupportedFormatError, convert

logger = logging.getLogger("xkt_convert")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xkt-convert",
        description="Convert a 3D model or point cloud into an .xkt file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Convert an IFC model with logging
  %(prog)s -s model.ifc -o model.xkt -l

  # Convert glTF and merge a metamodel
  %(prog)s -s house.gltf -m house.json -o house.xkt

  # Force the source format when the extension is ambiguous
  %(prog)s -s scan.data -f pcd -o scan.xkt
        """
    )
    parser.add_argument("-v", "--version", action="version", version=__version__)
    parser.add_argument("-s", "--source", metavar="FILE",
                        help="path to source file")
    parser.add_argument("-f", "--format", dest="source_format", metavar="STRING",
                        help=f"source file format; supported formats are {', '.join(SUPPORTED_FORMATS)}")
    parser.add_argument("-m", "--metamodel", metavar="FILE",
                        help="path to source metamodel JSON file (optional)")
    parser.add_argument("-o", "--output", metavar="FILE",
                        help="path to target .xkt file")
    parser.add_argument("-l", "--log", action="store_true",
                        help="log output")
    return parser


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.source is None:
        print("\n\nError: please specify source file path.", file=sys.stderr)
        parser.print_help()
        sys.exit(1)

    if args.output is None:
        print("\n\nError: please specify target xkt file path.", file=sys.stderr)
        parser.print_help()
        sys.exit(1)

    configure_logging(args.log)
    log = logger.info if args.log else None

    try:
        stats = convert(
            source=args.source,
            output=args.output,
            metamodel=args.metamodel,
            source_format=args.source_format,
            log=log,
        )
    except UnsupportedFormatError as exc:
        print(f"\n\nError: {exc}", file=sys.stderr)
        parser.print_help()
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(f"Something went wrong: {exc}", file=sys.stderr)
        if args.log:
            traceback.print_exc()
        sys.exit(1)
    except Exception as exc:
        print(f"Something went wrong: {exc}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    logger.info(
        f"Converted {stats.entities} entities ({stats.meshes} meshes, {stats.geometries} geometries, "
        f"{stats.tiles} tiles) into {args.output}"
    )


if __name__ == "__main__":
    main()
