#!/usr/bin/env python3
"""
autodbconv.py - Convert DBC/LDF/NCF network descriptions into frame codecs

For each input file: parse, normalize, validate, plan and generate one
source file per target. Diagnostics go to stderr; written files are
reported as `Generated: <path>` on stdout.

Exit codes:
    0  no errors
    1  reference, validation, plan or generation errors
    2  a file could not be lexed/parsed at all, or bad usage

Usage:
    python tools/autodbconv.py body.dbc -t c -t python -o generated/
    python tools/autodbconv.py networks/ --config autodbconv.yaml
    python tools/autodbconv.py chassis.ldf --check
    python tools/autodbconv.py chassis.ldf --dump-ir chassis.yaml --write-dbc chassis.dbc
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from codegen_targets import TARGETS
from converter_config import ConverterConfig, load_config
from dbc_writer import write_dbc
from generate_network_codec import output_filename
from network_ir import network_to_dict
from pipeline import EXTENSIONS, convert_file

logger = logging.getLogger('autodbconv')

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_FATAL = 2


def collect_inputs(paths: List[str]) -> List[Path]:
    files = []
    for name in paths:
        path = Path(name)
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.suffix.lower() in EXTENSIONS))
        else:
            files.append(path)
    return files


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Convert DBC/LDF/NCF network descriptions into frame codecs')
    parser.add_argument('inputs', nargs='+', help='Description files or directories')
    parser.add_argument('--format', choices=['dbc', 'ldf', 'ncf'],
                        help='Input format (default: from file extension)')
    parser.add_argument('-t', '--target', action='append', dest='targets',
                        choices=sorted(TARGETS), help='Target language; repeatable')
    parser.add_argument('-o', '--output', help='Output directory')
    parser.add_argument('--config', help='YAML config file')
    parser.add_argument('--workers', type=int, help='Worker threads for planning/generation')
    parser.add_argument('--dump-ir', metavar='PATH', help='Write the network model as YAML')
    parser.add_argument('--write-dbc', metavar='PATH', help='Write the network model as DBC')
    parser.add_argument('--check', action='store_true',
                        help='Validate only, generate nothing')
    parser.add_argument('--warnings-as-errors', action='store_true',
                        help='Exit 1 when any warning is reported')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def _output_path(option: str, path: Path, many: bool) -> Path:
    """Per-input output path: with several inputs the option names a directory."""
    out = Path(option)
    if many:
        out.mkdir(parents=True, exist_ok=True)
        return out / path.name
    return out


def _claim(out: Path, path: Path, written: Dict[Path, Path]) -> bool:
    """Record that `path` writes `out`; False when another input already did."""
    key = out.resolve()
    owner = written.setdefault(key, path)
    if owner != path:
        print(f'Error: {path.name}: {out} was already written for {owner.name}, skipped',
              file=sys.stderr)
        return False
    return True


def convert_one(path: Path, args: argparse.Namespace, config: ConverterConfig,
                many: bool, written: Optional[Dict[Path, Path]] = None) -> int:
    written = {} if written is None else written
    collisions = 0
    targets = [] if args.check else config.targets
    try:
        result = convert_file(path, args.format, targets, config.workers, config)
    except (OSError, ValueError) as e:
        print(f'Error: {path.name}: {e}', file=sys.stderr)
        return EXIT_FATAL

    for diagnostic in result.diagnostics:
        print(diagnostic.format(path.name), file=sys.stderr)
    if result.fatal:
        return EXIT_FATAL

    network = result.network
    if args.dump_ir:
        out = _output_path(args.dump_ir, path.with_suffix('.yaml'), many)
        if _claim(out, path, written):
            out.write_text(yaml.safe_dump(network_to_dict(network), sort_keys=False))
            print(f'Generated: {out}')
        else:
            collisions += 1
    if args.write_dbc:
        out = _output_path(args.write_dbc, path.with_suffix('.dbc'), many)
        if _claim(out, path, written):
            out.write_text(write_dbc(network))
            print(f'Generated: {out}')
        else:
            collisions += 1

    if not args.check:
        output_dir = Path(config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        options = config.generation_options(path.name)
        for target, code in result.sources.items():
            out = output_dir / output_filename(network, target, options)
            if not _claim(out, path, written):
                collisions += 1
                continue
            out.write_text(code)
            print(f'Generated: {out}')
    elif not result.diagnostics.has_errors:
        print(f'{path.name}: {len(network.messages)} messages, '
              f'{len(result.diagnostics.warnings)} warnings, no errors')

    if result.diagnostics.has_errors or collisions:
        return EXIT_ERRORS
    if config.warnings_as_errors and result.diagnostics.warnings:
        return EXIT_ERRORS
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config) if args.config else ConverterConfig()
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f'Error: config {args.config}: {e}', file=sys.stderr)
        return EXIT_FATAL

    if args.targets:
        config.targets = args.targets
    if args.output:
        config.output_dir = args.output
    if args.workers is not None:
        if args.workers < 1:
            parser.error('--workers must be at least 1')
        config.workers = args.workers
    if args.warnings_as_errors:
        config.warnings_as_errors = True

    files = collect_inputs(args.inputs)
    if not files:
        print('Error: no input files', file=sys.stderr)
        return EXIT_FATAL

    status = EXIT_OK
    written = {}
    for path in files:
        logger.debug('converting %s', path)
        status = max(status, convert_one(path, args, config, len(files) > 1, written))
    return status


if __name__ == '__main__':
    sys.exit(main())
