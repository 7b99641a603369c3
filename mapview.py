#!/usr/bin/env python3
"""
mapview — dump decoded BSP map data as JSON.

Runs the same queries the map viewer's /bsp endpoints answer and prints the
result payload to stdout.

Usage:
    python mapview.py de_dust2 summary
    python mapview.py de_dust2 model --index 0 [--depth 4]
    python mapview.py de_dust2 displacements --model 0
    python mapview.py de_dust2 leaf-faces "12 13 14"
    python mapview.py de_dust2 displacement-faces "0 1"
    python mapview.py de_dust2 visibility --index 3

The maps directory is taken from --maps-dir, then $BSPVIEW_MAPS_DIR, then
<game>/maps where <game> is --game or $BSPVIEW_GAME_DIR, then ./maps.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from bsp_errors import CorruptFormatError, MalformedParameterError, MapNotFoundError, MapViewError
from map_service import MapService

ENV_MAPS_DIR = 'BSPVIEW_MAPS_DIR'
ENV_GAME_DIR = 'BSPVIEW_GAME_DIR'

EXIT_NOT_FOUND = 2
EXIT_MALFORMED = 3
EXIT_CORRUPT = 4


def resolve_maps_dir(maps_dir: Optional[str] = None, game_dir: Optional[str] = None) -> Path:
    """Pick the maps directory from arguments and environment."""
    if maps_dir:
        return Path(maps_dir)
    env_maps = os.environ.get(ENV_MAPS_DIR, '')
    if env_maps:
        return Path(env_maps)
    game = game_dir or os.environ.get(ENV_GAME_DIR, '')
    if game:
        return Path(game) / 'maps'
    return Path('maps')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Decode a Source Engine BSP map and print viewer data as JSON",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python mapview.py de_dust2 summary
  python mapview.py de_dust2 model --index 0 --depth 3
  python mapview.py de_dust2 leaf-faces "1 2 3" -o faces.json
        """,
    )
    parser.add_argument('map', help='Map name (with or without .bsp)')
    parser.add_argument('--maps-dir', default=None,
                        help=f'Directory holding .bsp files (default: ${ENV_MAPS_DIR})')
    parser.add_argument('--game', default=None,
                        help=f'Game directory; maps are read from <game>/maps '
                             f'(default: ${ENV_GAME_DIR})')
    parser.add_argument('--output', '-o', default=None,
                        help='Write JSON to this file instead of stdout')
    parser.add_argument('--indent', type=int, default=None,
                        help='Pretty-print JSON with this indent')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Print progress and debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('summary', help='Cluster/model counts and resource links')

    p = sub.add_parser('model', help="One model's bounds and BSP tree")
    p.add_argument('--index', type=int, default=0, help='Model index (default: 0)')
    p.add_argument('--depth', type=int, default=None,
                   help='Expand at most this many node levels (default: whole tree)')

    p = sub.add_parser('displacements', help='Displacements belonging to a model')
    p.add_argument('--model', type=int, default=0, help='Model index (default: 0)')

    p = sub.add_parser('leaf-faces', help='Triangulated faces per leaf')
    p.add_argument('leaves', help='Whitespace-separated leaf indices')

    p = sub.add_parser('displacement-faces', help='Triangulated displacement surfaces')
    p.add_argument('displacements', help='Whitespace-separated displacement indices')

    p = sub.add_parser('visibility', help='Clusters visible from a cluster')
    p.add_argument('--index', type=int, required=True, help='Cluster index')

    return parser


def run_command(service: MapService, args: argparse.Namespace):
    if args.command == 'summary':
        return service.summary(args.map)
    if args.command == 'model':
        return service.model(args.map, args.index, args.depth)
    if args.command == 'displacements':
        return service.displacements(args.map, args.model)
    if args.command == 'leaf-faces':
        return service.leaf_faces(args.map, args.leaves)
    if args.command == 'displacement-faces':
        return service.displacement_faces(args.map, args.displacements)
    if args.command == 'visibility':
        return service.visibility(args.map, args.index)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    maps_dir = resolve_maps_dir(args.maps_dir, args.game)
    service = MapService(maps_dir)

    if args.verbose:
        print(f"\n{'='*60}", file=sys.stderr)
        print(f"  mapview — {args.map} ({args.command})", file=sys.stderr)
        print(f"  maps: {maps_dir}", file=sys.stderr)
        print(f"{'='*60}\n", file=sys.stderr, flush=True)

    t0 = time.perf_counter()
    try:
        result = run_command(service, args)
    except MapNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except MalformedParameterError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_MALFORMED
    except CorruptFormatError as e:
        print(f"ERROR: corrupt map: {e}", file=sys.stderr)
        return EXIT_CORRUPT
    except MapViewError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    text = json.dumps(result.to_json(), indent=args.indent)
    if args.output:
        Path(args.output).write_text(text + '\n', encoding='utf-8')
    else:
        print(text)

    if args.verbose:
        elapsed = time.perf_counter() - t0
        print(f"\n  Total: {elapsed:.2f}s", file=sys.stderr, flush=True)

    return 0


if __name__ == "__main__":
    sys.exit(main())
