#!/usr/bin/env python3
"""
codegen_targets.py - Target descriptors for generated frame codecs

A TargetDescriptor is a bundle of render functions: how a target names
numeric types, declares a message record, converts raw <-> physical and
writes the pack/unpack bodies. generate_network_codec.py walks the
network and calls these; it never looks at target syntax itself.

Targets:
    c           header-only C99 (<stdint.h>, <string.h>)
    python      dataclasses with pack()/unpack() and conversion functions
    javascript  CommonJS module of pack/unpack/conversion functions

Every routine stores raw values in the record; the *_to_physical and
*_to_raw helpers apply scale/offset (rounding half away from zero and
clamping to the raw domain).
"""

import keyword
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List

from codec_planner import CodecPlan
from diagnostics import GenerationError
from network_ir import Message, Network

JS_MAX_SAFE_BITS = 53


@dataclass
class GenerationOptions:
    source: str = ''
    guard_prefix: str = ''
    module_name: str = ''
    timestamp: bool = True


@dataclass(frozen=True)
class TargetDescriptor:
    name: str
    extension: str
    comment: Callable[[str], str]
    field_type: Callable[[CodecPlan], str]
    header: Callable[[Network, GenerationOptions], List[str]]
    footer: Callable[[Network, List[Message], GenerationOptions], List[str]]
    record: Callable[[Message, List[CodecPlan]], List[str]]
    conversions: Callable[[Message, List[CodecPlan]], List[str]]
    pack: Callable[[Message, List[CodecPlan]], List[str]]
    unpack: Callable[[Message, List[CodecPlan]], List[str]]
    check: Callable[[CodecPlan], None] = lambda plan: None


def ident(name: str) -> str:
    """Make a name usable as an identifier in every target."""
    cleaned = re.sub(r'[^a-zA-Z0-9_]', '_', name)
    if cleaned[:1].isdigit():
        cleaned = '_' + cleaned
    if keyword.iskeyword(cleaned):
        cleaned += '_'
    return cleaned


def num(value) -> str:
    """Numeric literal valid in C, Python and JavaScript."""
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


def describe_plan(plan: CodecPlan) -> str:
    order = 'LE' if plan.byte_order.value == 'little_endian' else 'BE'
    text = f'{plan.width} bit {order} {plan.kind.value}'
    if not plan.scaling.is_identity:
        text += f', scale {num(plan.scaling.scale)} offset {num(plan.scaling.offset)}'
    if plan.is_selector:
        text += ', multiplexor'
    if plan.is_multiplexed:
        text += f', when {plan.selector_name} == {plan.selector_value}'
    return text


def message_banner(message: Message) -> str:
    return f'{message.name} (id {message.display_id()}, {message.length} bytes)'


def generated_stamp(options: GenerationOptions) -> str:
    if not options.timestamp:
        return ''
    return datetime.now().strftime('%Y-%m-%d %H:%M')


def _grouped(plans: List[CodecPlan], body: Callable[[CodecPlan], List[str]],
             condition: Callable[[CodecPlan], str], open_block: str, close_block: str,
             indent: str) -> List[str]:
    """Render plan bodies, wrapping multiplexed ones in their selector test."""
    lines = []
    for plan in plans:
        if plan.is_multiplexed:
            lines.append(indent + condition(plan) + open_block)
            lines.extend(indent + '    ' + line for line in body(plan))
            if close_block:
                lines.append(indent + close_block)
        else:
            lines.extend(indent + line for line in body(plan))
    return lines


# =============================================================================
# C
# =============================================================================

def c_type(plan: CodecPlan) -> str:
    if plan.is_float:
        return 'float' if plan.width == 32 else 'double'
    for bits in (8, 16, 32, 64):
        if plan.width <= bits:
            return f'int{bits}_t' if plan.is_signed else f'uint{bits}_t'
    raise GenerationError(f'{plan.signal}: width {plan.width} too wide', 'c')


C_WIDE_LIMITS = {
    False: ('18446744073709551616.0', 'UINT64_MAX'),
    True: ('9223372036854775808.0', 'INT64_MAX'),
}


def _c_mask(width: int) -> str:
    return f'0x{(1 << width) - 1:X}ull'


def _c_guard(network: Network, options: GenerationOptions) -> str:
    base = ident(options.module_name or network.name or 'network').upper()
    return f'{options.guard_prefix.upper()}{base}_CODEC_H'


def c_header(network: Network, options: GenerationOptions) -> List[str]:
    guard = _c_guard(network, options)
    lines = [
        '/**',
        f' * {ident(options.module_name or network.name or "network")}_codec.h'
        f' - Generated {network.bus_type.value} frame codec',
        ' *',
        f' * Network:        {network.name} ({len(network.messages)} messages)',
    ]
    if options.source:
        lines.append(f' * Generated from: {options.source}')
    stamp = generated_stamp(options)
    if stamp:
        lines.append(f' * Generated at:   {stamp}')
    lines += [
        ' *',
        ' * Structs hold raw values; use the *_to_physical / *_to_raw helpers',
        ' * for scaled values.',
        ' *',
        ' * DO NOT EDIT - regenerate from the network description',
        ' */',
        '',
        f'#ifndef {guard}',
        f'#define {guard}',
        '',
        '#include <stdint.h>',
        '#include <string.h>',
        '',
    ]
    return lines


def c_footer(network: Network, messages: List[Message], options: GenerationOptions) -> List[str]:
    return ['', f'#endif /* {_c_guard(network, options)} */', '']


def c_record(message: Message, plans: List[CodecPlan]) -> List[str]:
    name = ident(message.name)
    upper = name.upper()
    lines = [f'/* ---- {message_banner(message)} ---- */', '']
    if message.identifier is not None:
        lines.append(f'#define {upper}_ID 0x{message.identifier:X}u')
    lines.append(f'#define {upper}_LENGTH {message.length}u')
    if message.is_extended:
        lines.append(f'#define {upper}_IS_EXTENDED 1')
    lines += ['', 'typedef struct {']
    for plan in sorted(plans, key=lambda p: p.signal_index):
        lines.append(f'    {c_type(plan)} {ident(plan.signal)};  /* {describe_plan(plan)} */')
    if not plans:
        lines.append('    uint8_t _reserved;')
    lines += [f'}} {name}_t;', '']
    return lines


def c_conversions(message: Message, plans: List[CodecPlan]) -> List[str]:
    lines = []
    for plan in sorted(plans, key=lambda p: p.signal_index):
        fn = f'{ident(message.name)}_{ident(plan.signal)}'
        ctype = c_type(plan)
        s = plan.scaling
        lines.append(f'static inline double {fn}_to_physical({ctype} raw) {{')
        lines.append(f'    return (double)raw * {num(s.scale)} + {num(s.offset)};')
        lines.append('}')
        lines.append(f'static inline {ctype} {fn}_to_raw(double value) {{')
        lines.append(f'    double r = (value - {num(s.offset)}) / {num(s.scale)};')
        if not plan.is_float:
            lines.append(f'    if (r < {num(float(s.raw_min))}) r = {num(float(s.raw_min))};')
            if plan.width == 64:
                # raw_max rounds up to 2^64 (2^63) as a double, one past the type
                bound, limit = C_WIDE_LIMITS[plan.is_signed]
                lines.append(f'    if (r >= {bound}) return {limit};')
            else:
                lines.append(f'    if (r > {num(float(s.raw_max))}) r = {num(float(s.raw_max))};')
            lines.append('    r = (r < 0.0) ? r - 0.5 : r + 0.5;')
            if plan.is_signed:
                lines.append(f'    return ({ctype})(int64_t)r;')
            else:
                lines.append(f'    return ({ctype})(uint64_t)r;')
        else:
            lines.append(f'    return ({ctype})r;')
        lines.append('}')
        lines.append('')
    return lines


def _c_pack_body(plan: CodecPlan) -> List[str]:
    field_name = f'msg->{ident(plan.signal)}'
    lines = []
    if plan.is_float:
        word = 'uint32_t' if plan.width == 32 else 'uint64_t'
        lines.append(f'{{ {word} tmp; memcpy(&tmp, &{field_name}, sizeof tmp); bits = tmp; }}')
    elif plan.is_signed:
        lines.append(f'bits = (uint64_t)(int64_t){field_name} & {_c_mask(plan.width)};')
    else:
        lines.append(f'bits = (uint64_t){field_name} & {_c_mask(plan.width)};')
    for span, shift in plan.shifts():
        lines.append(f'data[{span.byte}] |= (uint8_t)(((bits >> {shift}) & 0x{span.mask:X}u)'
                     f' << {span.bit_offset});')
    return lines


def _c_unpack_body(plan: CodecPlan) -> List[str]:
    field_name = f'msg->{ident(plan.signal)}'
    ctype = c_type(plan)
    lines = ['bits = 0;']
    for span in plan.spans:
        lines.append(f'bits = (bits << {span.bit_count}) | '
                     f'((uint64_t)(data[{span.byte}] >> {span.bit_offset}) & 0x{span.mask:X}u);')
    if plan.is_float:
        word = 'uint32_t' if plan.width == 32 else 'uint64_t'
        lines.append(f'{{ {word} tmp = ({word})bits; memcpy(&{field_name}, &tmp, sizeof tmp); }}')
    elif plan.is_signed:
        if plan.width < 64:
            lines.append(f'if (bits & (1ull << {plan.width - 1})) bits |= ~{_c_mask(plan.width)};')
        lines.append(f'{field_name} = ({ctype})(int64_t)bits;')
    else:
        lines.append(f'{field_name} = ({ctype})bits;')
    return lines


def _c_condition(plan: CodecPlan) -> str:
    return f'if (msg->{ident(plan.selector_name)} == {plan.selector_value}) '


def c_pack(message: Message, plans: List[CodecPlan]) -> List[str]:
    name = ident(message.name)
    lines = [f'static inline void {name}_pack(uint8_t *data, const {name}_t *msg) {{']
    if plans:
        lines.append('    uint64_t bits;')
    lines.append(f'    memset(data, 0, {name.upper()}_LENGTH);')
    lines += _grouped(plans, _c_pack_body, _c_condition, '{', '}', '    ')
    lines += ['}', '']
    return lines


def c_unpack(message: Message, plans: List[CodecPlan]) -> List[str]:
    name = ident(message.name)
    lines = [f'static inline void {name}_unpack({name}_t *msg, const uint8_t *data) {{']
    if plans:
        lines.append('    uint64_t bits;')
    lines.append('    memset(msg, 0, sizeof *msg);')
    lines += _grouped(plans, _c_unpack_body, _c_condition, '{', '}', '    ')
    lines += ['}', '']
    return lines


# =============================================================================
# Python
# =============================================================================

def python_type(plan: CodecPlan) -> str:
    return 'float' if plan.is_float else 'int'


def python_header(network: Network, options: GenerationOptions) -> List[str]:
    lines = [
        '"""',
        f'{network.name} {network.bus_type.value} frame codec.',
        '',
    ]
    if options.source:
        lines.append(f'Generated from: {options.source}')
    stamp = generated_stamp(options)
    if stamp:
        lines.append(f'Generated at:   {stamp}')
    lines += [
        '',
        'Message classes hold raw values; use the *_to_physical / *_to_raw',
        'functions for scaled values.',
        '',
        'DO NOT EDIT - regenerate from the network description',
        '"""',
        '',
        'import math',
        'import struct',
        'from dataclasses import dataclass',
        '',
        '',
        'def _round_half_away(value):',
        '    rounded = math.floor(abs(value) + 0.5)',
        '    return -rounded if value < 0 else rounded',
        '',
    ]
    return lines


def python_footer(network: Network, messages: List[Message],
                  options: GenerationOptions) -> List[str]:
    lines = ['', 'MESSAGES = {']
    for message in messages:
        lines.append(f'    {message.name!r}: {ident(message.name)},')
    lines.append('}')
    return lines


def python_record(message: Message, plans: List[CodecPlan]) -> List[str]:
    lines = ['', '@dataclass', f'class {ident(message.name)}:',
             f'    """{message_banner(message)}"""']
    if message.identifier is not None:
        lines.append(f'    FRAME_ID = 0x{message.identifier:X}')
    lines.append(f'    LENGTH = {message.length}')
    lines.append(f'    IS_EXTENDED = {message.is_extended}')
    for plan in sorted(plans, key=lambda p: p.signal_index):
        default = '0.0' if plan.is_float else '0'
        lines.append(f'    {ident(plan.signal)}: {python_type(plan)} = {default}'
                     f'  # {describe_plan(plan)}')
    lines.append('')
    return lines


def python_conversions(message: Message, plans: List[CodecPlan]) -> List[str]:
    lines = []
    for plan in sorted(plans, key=lambda p: p.signal_index):
        fn = f'{ident(message.name)}_{ident(plan.signal)}'
        s = plan.scaling
        lines += ['', f'def {fn}_to_physical(raw):',
                  f'    return raw * {num(s.scale)} + {num(s.offset)}', '']
        lines += ['', f'def {fn}_to_raw(value):',
                  f'    raw = (value - {num(s.offset)}) / {num(s.scale)}']
        if plan.is_float:
            lines.append('    return raw')
        else:
            lines.append(f'    return min(max(_round_half_away(raw), {num(s.raw_min)}), '
                         f'{num(s.raw_max)})')
        lines.append('')
    return lines


def _py_struct_formats(plan: CodecPlan):
    return ("'>f'", "'>I'") if plan.width == 32 else ("'>d'", "'>Q'")


def _python_pack_body(plan: CodecPlan) -> List[str]:
    field_name = f'self.{ident(plan.signal)}'
    if plan.is_float:
        value_fmt, bits_fmt = _py_struct_formats(plan)
        lines = [f'bits = struct.unpack({bits_fmt}, struct.pack({value_fmt}, {field_name}))[0]']
    else:
        lines = [f'bits = int({field_name}) & 0x{(1 << plan.width) - 1:X}']
    for span, shift in plan.shifts():
        lines.append(f'data[{span.byte}] |= ((bits >> {shift}) & 0x{span.mask:X})'
                     f' << {span.bit_offset}')
    return lines


def _python_unpack_body(plan: CodecPlan) -> List[str]:
    field_name = f'msg.{ident(plan.signal)}'
    lines = ['bits = 0']
    for span in plan.spans:
        lines.append(f'bits = (bits << {span.bit_count}) | '
                     f'((data[{span.byte}] >> {span.bit_offset}) & 0x{span.mask:X})')
    if plan.is_float:
        value_fmt, bits_fmt = _py_struct_formats(plan)
        lines.append(f'{field_name} = struct.unpack({value_fmt}, struct.pack({bits_fmt}, bits))[0]')
    else:
        if plan.is_signed:
            lines.append(f'if bits & 0x{1 << (plan.width - 1):X}:')
            lines.append(f'    bits -= 0x{1 << plan.width:X}')
        lines.append(f'{field_name} = bits')
    return lines


def python_pack(message: Message, plans: List[CodecPlan]) -> List[str]:
    lines = ['    def pack(self) -> bytes:',
             f'        data = bytearray({message.length})']
    lines += _grouped(plans, _python_pack_body,
                      lambda p: f'if self.{ident(p.selector_name)} == {p.selector_value}',
                      ':', '', '        ')
    lines += ['        return bytes(data)', '']
    return lines


def python_unpack(message: Message, plans: List[CodecPlan]) -> List[str]:
    name = ident(message.name)
    lines = ['    @classmethod',
             f"    def unpack(cls, data: bytes) -> '{name}':",
             f'        if len(data) < {message.length}:',
             f"            raise ValueError('{name} needs {message.length} bytes, got %d' % len(data))",
             '        msg = cls()']
    lines += _grouped(plans, _python_unpack_body,
                      lambda p: f'if msg.{ident(p.selector_name)} == {p.selector_value}',
                      ':', '', '        ')
    lines += ['        return msg', '']
    return lines


# =============================================================================
# JavaScript
# =============================================================================

def javascript_type(plan: CodecPlan) -> str:
    return 'number'


def javascript_check(plan: CodecPlan) -> None:
    if plan.width > JS_MAX_SAFE_BITS:
        kind = 'float64' if plan.is_float else f'{plan.width}-bit integer'
        raise GenerationError(
            f'{plan.message}.{plan.signal}: {kind} does not fit a JavaScript number '
            f'({JS_MAX_SAFE_BITS} bits)', 'javascript')


def javascript_header(network: Network, options: GenerationOptions) -> List[str]:
    lines = [
        '/**',
        f' * {network.name} {network.bus_type.value} frame codec',
        ' *',
    ]
    if options.source:
        lines.append(f' * Generated from: {options.source}')
    stamp = generated_stamp(options)
    if stamp:
        lines.append(f' * Generated at:   {stamp}')
    lines += [
        ' *',
        ' * DO NOT EDIT - regenerate from the network description',
        ' */',
        "'use strict';",
        '',
        'function roundHalfAway(value) {',
        '  return Math.sign(value) * Math.floor(Math.abs(value) + 0.5);',
        '}',
        '',
    ]
    return lines


def javascript_footer(network: Network, messages: List[Message],
                      options: GenerationOptions) -> List[str]:
    exports = []
    for message in messages:
        name = ident(message.name)
        exports += [f'{name}_pack', f'{name}_unpack']
        for signal in message.signals:
            exports += [f'{name}_{ident(signal.name)}_to_physical',
                        f'{name}_{ident(signal.name)}_to_raw']
    lines = ['module.exports = {']
    lines += [f'  {name},' for name in exports]
    lines += ['};', '']
    return lines


def javascript_record(message: Message, plans: List[CodecPlan]) -> List[str]:
    lines = ['/**', f' * {message_banner(message)}', f' * @typedef {{Object}} {ident(message.name)}']
    for plan in sorted(plans, key=lambda p: p.signal_index):
        lines.append(f' * @property {{number}} {ident(plan.signal)} {describe_plan(plan)}')
    lines += [' */', '']
    return lines


def javascript_conversions(message: Message, plans: List[CodecPlan]) -> List[str]:
    lines = []
    for plan in sorted(plans, key=lambda p: p.signal_index):
        fn = f'{ident(message.name)}_{ident(plan.signal)}'
        s = plan.scaling
        lines += [f'function {fn}_to_physical(raw) {{',
                  f'  return raw * {num(s.scale)} + {num(s.offset)};', '}']
        lines += [f'function {fn}_to_raw(value) {{',
                  f'  const raw = (value - {num(s.offset)}) / {num(s.scale)};']
        if plan.is_float:
            lines.append('  return raw;')
        else:
            lines.append(f'  return Math.min(Math.max(roundHalfAway(raw), {num(s.raw_min)}), '
                         f'{num(s.raw_max)});')
        lines += ['}', '']
    return lines


def _javascript_pack_body(plan: CodecPlan) -> List[str]:
    field_name = f'msg.{ident(plan.signal)}'
    if plan.is_float:
        lines = ['view.setFloat32(0, ' + field_name + ');', 'bits = view.getUint32(0);']
    elif plan.is_signed:
        lines = [f'bits = {field_name} < 0 ? {field_name} + {1 << plan.width} : {field_name};']
    else:
        lines = [f'bits = {field_name};']
    for span, shift in plan.shifts():
        chunk = f'bits % {1 << span.bit_count}' if shift == 0 else \
            f'Math.floor(bits / {1 << shift}) % {1 << span.bit_count}'
        lines.append(f'data[{span.byte}] |= ({chunk}) << {span.bit_offset};')
    return lines


def _javascript_unpack_body(plan: CodecPlan) -> List[str]:
    field_name = f'msg.{ident(plan.signal)}'
    lines = ['bits = 0;']
    for span in plan.spans:
        lines.append(f'bits = bits * {1 << span.bit_count} + '
                     f'((data[{span.byte}] >> {span.bit_offset}) & 0x{span.mask:X});')
    if plan.is_float:
        lines += ['view.setUint32(0, bits);', f'{field_name} = view.getFloat32(0);']
    else:
        if plan.is_signed:
            lines.append(f'if (bits >= {1 << (plan.width - 1)}) bits -= {1 << plan.width};')
        lines.append(f'{field_name} = bits;')
    return lines


def _javascript_locals(plans: List[CodecPlan]) -> List[str]:
    lines = ['  let bits;']
    if any(p.is_float for p in plans):
        lines.append('  const view = new DataView(new ArrayBuffer(4));')
    return lines


def javascript_pack(message: Message, plans: List[CodecPlan]) -> List[str]:
    name = ident(message.name)
    lines = [f'function {name}_pack(msg) {{', f'  const data = new Uint8Array({message.length});']
    if plans:
        lines += _javascript_locals(plans)
    lines += _grouped(plans, _javascript_pack_body,
                      lambda p: f'if (msg.{ident(p.selector_name)} === {p.selector_value}) ',
                      '{', '}', '  ')
    lines += ['  return data;', '}', '']
    return lines


def javascript_unpack(message: Message, plans: List[CodecPlan]) -> List[str]:
    name = ident(message.name)
    lines = [f'function {name}_unpack(data) {{',
             f'  if (data.length < {message.length}) {{',
             f"    throw new RangeError('{name} needs {message.length} bytes');",
             '  }',
             '  const msg = {};']
    if plans:
        lines += _javascript_locals(plans)
    lines += _grouped(plans, _javascript_unpack_body,
                      lambda p: f'if (msg.{ident(p.selector_name)} === {p.selector_value}) ',
                      '{', '}', '  ')
    lines += ['  return msg;', '}', '']
    return lines


TARGETS: Dict[str, TargetDescriptor] = {
    'c': TargetDescriptor(
        name='c', extension='.h',
        comment=lambda text: f'/* {text} */',
        field_type=c_type,
        header=c_header, footer=c_footer,
        record=c_record, conversions=c_conversions,
        pack=c_pack, unpack=c_unpack,
    ),
    'python': TargetDescriptor(
        name='python', extension='.py',
        comment=lambda text: f'# {text}',
        field_type=python_type,
        header=python_header, footer=python_footer,
        record=python_record, conversions=python_conversions,
        pack=python_pack, unpack=python_unpack,
    ),
    'javascript': TargetDescriptor(
        name='javascript', extension='.js',
        comment=lambda text: f'// {text}',
        field_type=javascript_type,
        header=javascript_header, footer=javascript_footer,
        record=javascript_record, conversions=javascript_conversions,
        pack=javascript_pack, unpack=javascript_unpack,
        check=javascript_check,
    ),
}


def get_target(name: str) -> TargetDescriptor:
    try:
        return TARGETS[name]
    except KeyError:
        raise GenerationError(f'unknown target {name!r} (known: {", ".join(TARGETS)})', name)
