#!/usr/bin/env python3
"""
dbc_writer.py - Write a Network back out as a DBC file

The output re-parses and normalizes to an equal Network (for networks that
came from DBC), which is what the idempotence tests check. LIN networks
can be written too; they come back as CAN networks with little-endian
signals.

Usage:
    from dbc_writer import write_dbc

    Path('out.dbc').write_text(write_dbc(network))
"""

import logging
from typing import Any, Dict, List

from dbc_parser import NULL_NODE
from network_ir import ByteOrder, Message, Network, Signal, ValueKind
from normalizer import EXTENDED_ID_FLAG

logger = logging.getLogger(__name__)

OBJECT_KEYWORDS = {'network': '', 'node': 'BU_', 'message': 'BO_', 'signal': 'SG_',
                   'env': 'EV_'}


def _quote(text: str) -> str:
    return '"' + str(text).replace('\\', '\\\\').replace('"', '\\"') + '"'


def _number(value: Any) -> str:
    if isinstance(value, int):
        return str(value)
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _attribute_value(value: Any) -> str:
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


def _raw_id(message: Message) -> int:
    if message.identifier is None:
        logger.warning('message %s has no identifier, written as 0', message.name)
        return 0
    return message.identifier | EXTENDED_ID_FLAG if message.is_extended else message.identifier


def _multiplex_indicator(signal: Signal) -> str:
    if signal.is_multiplexor:
        return ' M'
    if signal.is_multiplexed:
        return f' m{signal.mux_value}'
    return ''


def _signal_line(network: Network, signal: Signal) -> str:
    order = '1' if signal.byte_order == ByteOrder.LITTLE_ENDIAN else '0'
    sign = '-' if signal.kind in (ValueKind.SIGNED, ValueKind.FLOAT) else '+'
    minimum = signal.minimum if signal.minimum is not None else 0
    maximum = signal.maximum if signal.maximum is not None else 0
    receivers = ','.join(network.nodes[i].name for i in sorted(signal.receivers)) or NULL_NODE
    return (f' SG_ {signal.name}{_multiplex_indicator(signal)} : '
            f'{signal.start_bit}|{signal.width}@{order}{sign} '
            f'({_number(signal.scale)},{_number(signal.offset)}) '
            f'[{_number(minimum)}|{_number(maximum)}] '
            f'{_quote(signal.unit)} {receivers}')


def _value_pairs(pairs) -> str:
    return ' '.join(f'{raw} {_quote(label)}' for raw, label in pairs)


def write_dbc(network: Network) -> str:
    """Render the network as DBC text."""
    lines: List[str] = [f'VERSION {_quote(network.version)}', '', 'NS_ :', '', 'BS_:', '']
    lines.append('BU_: ' + ' '.join(node.name for node in network.nodes))
    lines.append('')

    for name, pairs in network.value_tables:
        lines.append(f'VAL_TABLE_ {name} {_value_pairs(pairs)} ;')
    if network.value_tables:
        lines.append('')

    for message in network.messages:
        sender = network.nodes[message.sender].name if message.sender is not None else NULL_NODE
        lines.append(f'BO_ {_raw_id(message)} {message.name}: {message.length} {sender}')
        for signal in message.signals:
            lines.append(_signal_line(network, signal))
        lines.append('')

    extra_senders: Dict[int, List[str]] = {}
    for node in network.nodes:
        for index in sorted(node.sends):
            if network.messages[index].sender != node.index:
                extra_senders.setdefault(index, []).append(node.name)
    for index, names in sorted(extra_senders.items()):
        lines.append(f'BO_TX_BU_ {_raw_id(network.messages[index])} : {",".join(names)};')

    if network.comment:
        lines.append(f'CM_ {_quote(network.comment)};')
    for node in network.nodes:
        if node.comment:
            lines.append(f'CM_ BU_ {node.name} {_quote(node.comment)};')
    for message in network.messages:
        if message.comment:
            lines.append(f'CM_ BO_ {_raw_id(message)} {_quote(message.comment)};')
        for signal in message.signals:
            if signal.comment:
                lines.append(f'CM_ SG_ {_raw_id(message)} {signal.name} {_quote(signal.comment)};')

    for definition in network.attribute_definitions:
        keyword = OBJECT_KEYWORDS.get(definition.object_type, '')
        prefix = f'BA_DEF_ {keyword} ' if keyword else 'BA_DEF_  '
        if definition.value_type == 'ENUM':
            spec = 'ENUM ' + ','.join(_quote(c) for c in definition.choices)
        elif definition.value_type == 'STRING':
            spec = 'STRING'
        else:
            spec = (f'{definition.value_type} {_number(definition.minimum or 0)} '
                    f'{_number(definition.maximum or 0)}')
        lines.append(f'{prefix}{_quote(definition.name)} {spec};')
    for definition in network.attribute_definitions:
        if definition.default is not None:
            lines.append(f'BA_DEF_DEF_  {_quote(definition.name)} '
                         f'{_attribute_value(definition.default)};')

    for name, value in network.attributes:
        lines.append(f'BA_ {_quote(name)} {_attribute_value(value)};')
    for node in network.nodes:
        for name, value in node.attributes:
            lines.append(f'BA_ {_quote(name)} BU_ {node.name} {_attribute_value(value)};')
    for message in network.messages:
        for name, value in message.attributes:
            lines.append(f'BA_ {_quote(name)} BO_ {_raw_id(message)} {_attribute_value(value)};')
        for signal in message.signals:
            for name, value in signal.attributes:
                lines.append(f'BA_ {_quote(name)} SG_ {_raw_id(message)} {signal.name} '
                             f'{_attribute_value(value)};')

    for message in network.messages:
        for signal in message.signals:
            if signal.value_table:
                lines.append(f'VAL_ {_raw_id(message)} {signal.name} '
                             f'{_value_pairs(signal.value_table)} ;')

    for message in network.messages:
        for signal in message.signals:
            if signal.is_float:
                value_type = 1 if signal.width == 32 else 2
                lines.append(f'SIG_VALTYPE_ {_raw_id(message)} {signal.name} : {value_type};')

    lines.append('')
    return '\n'.join(lines)
