#!/usr/bin/env python3
"""
validate_network.py - Check a Network against the model invariants

validate() never stops at the first problem and never merges problems:
N independent violations give N diagnostics. The Network is not changed.

Checks (diagnostic code in brackets):
  - two messages with the same identifier             [duplicate-identifier]
  - a signal reaching past its message's length        [signal-out-of-range]
  - two signals sharing bits, unless both are
    multiplexed under different selector values        [bit-range-overlap]
  - multiplexed signals without exactly one selector   [multiplexor-count]
  - a schedule entry naming a missing frame            [unresolved-reference]
  - a zero scale factor                                [zero-scale]
  - a width outside 1..64, or a float not 32/64 bits   [invalid-width]
  - a CAN id beyond 11/29 bits, a LIN id beyond 63     [identifier-range]
  - a CAN length beyond 64, a LIN length outside 1..8  [message-length]

Usage:
    python tools/validate_network.py network.dbc [--format dbc]
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path
from typing import Any, Dict, List, Tuple

from codec_planner import FLOAT_WIDTHS, MAX_WIDTH, occupied_bits
from diagnostics import Diagnostic, reference_error, violation
from network_ir import BusType, Message, Network, ScheduleEntryKind, Signal, ValueKind

CAN_STANDARD_MAX_ID = 0x7FF
CAN_EXTENDED_MAX_ID = 0x1FFFFFFF
CAN_MAX_LENGTH = 64
LIN_MAX_ID = 63
LIN_MAX_LENGTH = 8


@dataclass
class ValidationResult:
    """Validation outcome; mirrors the shape the CLI reports."""
    valid: bool = True
    errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)

    def add(self, diagnostic: Diagnostic):
        if diagnostic.is_error:
            self.errors.append(diagnostic)
            self.valid = False
        else:
            self.warnings.append(diagnostic)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': [d.to_dict() for d in self.errors],
            'warnings': [d.to_dict() for d in self.warnings],
        }


def _where(message: Message, signal: Signal = None) -> str:
    if signal is None:
        return f'message {message.name}'
    return f'message {message.name} signal {signal.name}'


def _check_identifiers(network: Network) -> List[Diagnostic]:
    found = []
    seen: Dict[Tuple[int, bool], str] = {}
    for message in network.messages:
        if message.identifier is None:
            continue
        key = (message.identifier, message.is_extended)
        if key in seen:
            found.append(violation(
                'duplicate-identifier',
                f'identifier {message.display_id()} of {message.name} already used by {seen[key]}',
                _where(message)))
        else:
            seen[key] = message.name

        if network.bus_type == BusType.CAN:
            limit = CAN_EXTENDED_MAX_ID if message.is_extended else CAN_STANDARD_MAX_ID
        elif network.bus_type == BusType.LIN:
            limit = LIN_MAX_ID
        else:
            continue
        if not 0 <= message.identifier <= limit:
            found.append(violation('identifier-range',
                                   f'identifier {message.identifier:#x} exceeds {limit:#x}',
                                   _where(message)))
    return found


def _check_length(network: Network, message: Message) -> List[Diagnostic]:
    if network.bus_type == BusType.CAN:
        low, high = 0, CAN_MAX_LENGTH
    elif network.bus_type == BusType.LIN:
        low, high = 1, LIN_MAX_LENGTH
    else:
        return []
    if low <= message.length <= high:
        return []
    return [violation('message-length',
                      f'length {message.length} outside {low}..{high} bytes', _where(message))]


def _check_signal(message: Message, signal: Signal) -> List[Diagnostic]:
    found = []
    if not 1 <= signal.width <= MAX_WIDTH:
        found.append(violation('invalid-width', f'width {signal.width} outside 1..{MAX_WIDTH}',
                               _where(message, signal)))
    elif signal.kind == ValueKind.FLOAT and signal.width not in FLOAT_WIDTHS:
        found.append(violation('invalid-width',
                               f'float width {signal.width} is neither 32 nor 64',
                               _where(message, signal)))
    if signal.scale == 0:
        found.append(violation('zero-scale', 'scale factor is zero', _where(message, signal)))
    return found


def _check_layout(message: Message) -> List[Diagnostic]:
    found = []
    bits = {}
    limit = message.length * 8
    for i, signal in enumerate(message.signals):
        if signal.width < 1 or signal.byte_order is None:
            continue
        bits[i] = occupied_bits(signal.start_bit, signal.width, signal.byte_order)
        if any(b >= limit for b in bits[i]):
            found.append(violation(
                'signal-out-of-range',
                f'bits {signal.start_bit}+{signal.width} do not fit in {message.length} bytes',
                _where(message, signal)))

    for i, j in combinations(sorted(bits), 2):
        a, b = message.signals[i], message.signals[j]
        if a.is_multiplexed and b.is_multiplexed and a.mux_value != b.mux_value:
            continue
        if bits[i] & bits[j]:
            found.append(violation('bit-range-overlap',
                                   f'signals {a.name} and {b.name} share bits',
                                   _where(message)))

    if message.is_multiplexed and len(message.selectors) != 1:
        found.append(violation(
            'multiplexor-count',
            f'multiplexed signals need exactly one multiplexor, found {len(message.selectors)}',
            _where(message)))
    return found


def _check_schedules(network: Network) -> List[Diagnostic]:
    found = []
    for schedule in network.schedules:
        for position, entry in enumerate(schedule.entries):
            if entry.kind == ScheduleEntryKind.FRAME and entry.message is None:
                found.append(reference_error(
                    'frame', entry.name, f'schedule table {schedule.name} entry {position}'))
    return found


def validate(network: Network) -> List[Diagnostic]:
    """Every invariant violation in the network, one diagnostic each."""
    found = _check_identifiers(network)
    for message in network.messages:
        found.extend(_check_length(network, message))
        for signal in message.signals:
            found.extend(_check_signal(message, signal))
        found.extend(_check_layout(message))
    found.extend(_check_schedules(network))
    return found


def validate_result(network: Network) -> ValidationResult:
    result = ValidationResult()
    for diagnostic in validate(network):
        result.add(diagnostic)
    return result


def main():
    from pipeline import load_network

    parser = argparse.ArgumentParser(description='Validate a DBC, LDF or NCF network description')
    parser.add_argument('input', help='Description file')
    parser.add_argument('--format', choices=['dbc', 'ldf', 'ncf'],
                        help='Input format (default: from file extension)')
    parser.add_argument('--json', action='store_true',
                        help='Output results as JSON')
    args = parser.parse_args()

    path = Path(args.input)
    network, diagnostics = load_network(path, args.format)
    if network is None:
        print(diagnostics.format(path.name), file=sys.stderr)
        sys.exit(2)

    result = validate_result(network)
    if args.json:
        for diagnostic in diagnostics:
            result.add(diagnostic)
        print(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    for diagnostic in list(diagnostics) + result.errors + result.warnings:
        print(diagnostic.format(path.name))
    if result.valid and not diagnostics.has_errors:
        print(f'{path.name}: {len(network.messages)} messages, no violations')
    sys.exit(0 if result.valid and not diagnostics.has_errors else 1)


if __name__ == '__main__':
    main()
