#!/usr/bin/env python3
"""
generate_network_codec.py - Generate pack/unpack code for a CAN/LIN network

Renders one record type, one pack routine, one unpack routine and the
raw <-> physical helpers per message, for any target registered in
codegen_targets.TARGETS.

Messages whose codec plan failed are left out and flagged with a comment
at the place they would have appeared. A signal the target cannot
represent raises GenerationError, which fails that target only.

Usage:
    python tools/generate_network_codec.py network.dbc [-t c] [-o output.h]
    python tools/generate_network_codec.py network.ldf -t python -t javascript -o generated/
"""

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from codec_planner import NetworkPlan
from codegen_targets import GenerationOptions, TargetDescriptor, get_target, ident
from diagnostics import Diagnostics, GenerationError
from network_ir import Message, Network

logger = logging.getLogger(__name__)


def _render_message(descriptor: TargetDescriptor, message: Message,
                    network_plan: NetworkPlan) -> List[str]:
    if network_plan.is_failed(message.index):
        reasons = '; '.join(f'{e.signal}: {e.reason}' for e in network_plan.failed[message.index])
        return [descriptor.comment(f'OMITTED {message.name}: no codec plan ({reasons})'), '']
    plans = network_plan.plans_for(message.index)
    lines = []
    lines += descriptor.record(message, plans)
    lines += descriptor.pack(message, plans)
    lines += descriptor.unpack(message, plans)
    lines += descriptor.conversions(message, plans)
    return lines


def generate(network: Network, network_plan: NetworkPlan,
             target: Union[str, TargetDescriptor],
             options: Optional[GenerationOptions] = None, workers: int = 1) -> str:
    """Render the network's codec source for one target.

    Raises GenerationError when the target cannot represent a signal.
    """
    descriptor = get_target(target) if isinstance(target, str) else target
    options = options or GenerationOptions()

    for message in network.messages:
        for plan in network_plan.plans.get(message.index, []):
            descriptor.field_type(plan)
            descriptor.check(plan)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            bodies = list(pool.map(lambda m: _render_message(descriptor, m, network_plan),
                                   network.messages))
    else:
        bodies = [_render_message(descriptor, m, network_plan) for m in network.messages]

    generated = [m for m in network.messages if not network_plan.is_failed(m.index)]
    lines = descriptor.header(network, options)
    for body in bodies:
        lines += body
    lines += descriptor.footer(network, generated, options)
    logger.debug('generated %s codec for %d/%d messages', descriptor.name, len(generated),
                 len(network.messages))
    return '\n'.join(lines)


def generate_all(network: Network, network_plan: NetworkPlan, targets: Iterable[str],
                 diagnostics: Diagnostics, options: Optional[GenerationOptions] = None,
                 workers: int = 1) -> Dict[str, str]:
    """Generate every requested target; a failing target is reported and skipped."""
    sources = {}
    for target in targets:
        try:
            sources[target] = generate(network, network_plan, target, options, workers)
        except GenerationError as e:
            diagnostics.add(e.to_diagnostic())
            logger.warning('target %s skipped: %s', target, e.reason)
    return sources


def output_filename(network: Network, target: str, options: GenerationOptions) -> str:
    base = ident(options.module_name or network.name or 'network').lower()
    suffix = '_codec' if target == 'c' else ''
    return f'{base}{suffix}{get_target(target).extension}'


def main():
    from pipeline import convert_file

    parser = argparse.ArgumentParser(description='Generate frame codecs from a DBC/LDF/NCF file')
    parser.add_argument('input', help='Description file')
    parser.add_argument('-t', '--target', action='append', dest='targets',
                        help='Target language (c, python, javascript); repeatable')
    parser.add_argument('-o', '--output', help='Output file or directory')
    args = parser.parse_args()

    targets = args.targets or ['c']
    path = Path(args.input)
    result = convert_file(path, targets=targets)
    if result.diagnostics.items:
        print(result.diagnostics.format(path.name), file=sys.stderr)
    if result.network is None:
        sys.exit(2)

    output_path = Path(args.output) if args.output else None
    for target, code in result.sources.items():
        if output_path is None:
            print(code)
        elif len(targets) == 1 and output_path.suffix:
            output_path.write_text(code)
            print(f'Generated: {output_path}')
        else:
            output_path.mkdir(parents=True, exist_ok=True)
            out = output_path / output_filename(result.network, target, GenerationOptions())
            out.write_text(code)
            print(f'Generated: {out}')
    sys.exit(1 if result.diagnostics.has_errors else 0)


if __name__ == '__main__':
    main()
