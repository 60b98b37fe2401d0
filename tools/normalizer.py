#!/usr/bin/env python3
"""
normalizer.py - Turn a DBC, LDF or NCF syntax tree into a Network

Each format registers one function in NORMALIZERS; normalize() picks the
function by format and threads the caller's Diagnostics collector
through it. All names are resolved to integer indices here, in a single
pass per relation. An unresolved name becomes an `unresolved-reference`
diagnostic and the rest of the tree is still converted.

Format defaults:
    DBC  big-endian unless the signal says @1, identifiers with bit 31 set
         are 29-bit extended, SIG_VALTYPE_ 1/2 makes a float signal
    LDF  little-endian, unsigned, scaling from the first physical_value range
    NCF  as LDF; frames described by several nodes are merged by name

Schedule entries naming a frame that does not exist are kept with no
message index; reporting those is the validator's job.

Usage:
    from normalizer import normalize
    from diagnostics import Diagnostics

    diagnostics = Diagnostics()
    network = normalize(ast, 'dbc', diagnostics)
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from dbc_parser import DbcFile
from description_lexer import Dialect
from diagnostics import Diagnostics, Stage, reference_error
from ldf_parser import LdfEncodingType, LdfFile
from ncf_parser import NcfFile
from network_ir import (
    AttributeDefinition, BusType, ByteOrder, LinProperties, Message, MuxRole,
    Network, Node, PhysicalRange, Schedule, ScheduleEntry, ScheduleEntryKind,
    Signal, ValueKind,
)

logger = logging.getLogger(__name__)

EXTENDED_ID_FLAG = 0x80000000
EXTENDED_ID_MASK = 0x1FFFFFFF

DBC_OBJECT_TYPES = {'': 'network', 'BU_': 'node', 'BO_': 'message', 'SG_': 'signal',
                    'EV_': 'env'}
CYCLE_TIME_ATTRIBUTE = 'GenMsgCycleTime'


def _init_value_to_int(value: Union[int, List[int]]) -> int:
    """LIN byte-array initial values are little-endian byte lists."""
    if isinstance(value, list):
        return sum((b & 0xFF) << (8 * i) for i, b in enumerate(value))
    return value


def _apply_encoding(fields: Dict[str, Any], encoding: LdfEncodingType) -> None:
    fields['encoding'] = encoding.name
    physical = [v for v in encoding.values if v.kind == 'physical']
    logical = [v for v in encoding.values if v.kind == 'logical']
    if physical:
        first = physical[0]
        fields['scale'] = first.scale
        fields['offset'] = first.offset
        fields['unit'] = first.text
        bounds = [first.minimum * first.scale + first.offset,
                  first.maximum * first.scale + first.offset]
        fields['minimum'] = min(bounds)
        fields['maximum'] = max(bounds)
        fields['physical_ranges'] = tuple(
            PhysicalRange(v.minimum, v.maximum, v.scale, v.offset, v.text) for v in physical)
    if logical:
        fields['value_table'] = tuple((v.minimum, v.text) for v in logical)


def _freeze_nodes(names: List[str], sends: Dict[int, set], receives: Dict[int, set],
                  extra: Dict[int, Dict[str, Any]]) -> Tuple[Node, ...]:
    return tuple(
        Node(index=i, name=name,
             sends=frozenset(sends.get(i, ())),
             receives=frozenset(receives.get(i, ())),
             **extra.get(i, {}))
        for i, name in enumerate(names))


# =============================================================================
# DBC
# =============================================================================

def _normalize_dbc(ast: DbcFile, diagnostics: Diagnostics, name: str) -> Network:
    node_names: List[str] = []
    node_index: Dict[str, int] = {}
    for node in ast.nodes:
        if node in node_index:
            diagnostics.warn(Stage.REFERENCE, f'node {node!r} declared twice',
                             'duplicate-node')
            continue
        node_index[node] = len(node_names)
        node_names.append(node)

    sends: Dict[int, set] = {}
    receives: Dict[int, set] = {}
    node_extra: Dict[int, Dict[str, Any]] = {}

    def resolve_node(node: str, context: str, position=None) -> Optional[int]:
        index = node_index.get(node)
        if index is None:
            diagnostics.add(reference_error('node', node, context, position))
        return index

    message_fields: List[Dict[str, Any]] = []
    signal_fields: List[List[Dict[str, Any]]] = []
    by_frame_id: Dict[int, int] = {}

    for dbc_message in ast.messages:
        index = len(message_fields)
        raw_id = dbc_message.frame_id
        is_extended = bool(raw_id & EXTENDED_ID_FLAG)
        identifier = raw_id & EXTENDED_ID_MASK if is_extended else raw_id
        by_frame_id.setdefault(raw_id, index)

        sender = None
        if dbc_message.transmitter is not None:
            sender = resolve_node(dbc_message.transmitter,
                                  f'sender of message {dbc_message.name}',
                                  dbc_message.position)
            if sender is not None:
                sends.setdefault(sender, set()).add(index)

        message_fields.append(dict(index=index, name=dbc_message.name, identifier=identifier,
                                   length=dbc_message.dlc, sender=sender,
                                   is_extended=is_extended))

        signals = []
        for dbc_signal in dbc_message.signals:
            receivers = set()
            for receiver in dbc_signal.receivers:
                node = resolve_node(receiver,
                                    f'receiver of {dbc_message.name}.{dbc_signal.name}',
                                    dbc_signal.position)
                if node is not None:
                    receivers.add(node)
                    receives.setdefault(node, set()).add(index)

            mux_role = MuxRole.NONE
            mux_value = None
            if dbc_signal.multiplex == 'M':
                mux_role = MuxRole.SELECTOR
            elif dbc_signal.multiplex is not None:
                mux_role = MuxRole.MULTIPLEXED
                mux_value = dbc_signal.multiplex_value
                if dbc_signal.is_multiplexor:
                    diagnostics.warn(
                        Stage.REFERENCE,
                        f'nested multiplexor {dbc_signal.name} treated as multiplexed '
                        f'signal of the top-level selector', 'nested-multiplexing',
                        dbc_signal.position, f'message {dbc_message.name}')

            has_range = dbc_signal.minimum != 0 or dbc_signal.maximum != 0
            signals.append(dict(
                name=dbc_signal.name,
                start_bit=dbc_signal.start_bit,
                width=dbc_signal.length,
                byte_order=ByteOrder.LITTLE_ENDIAN if dbc_signal.little_endian
                else ByteOrder.BIG_ENDIAN,
                kind=ValueKind.SIGNED if dbc_signal.signed else ValueKind.UNSIGNED,
                scale=dbc_signal.factor,
                offset=dbc_signal.offset,
                minimum=dbc_signal.minimum if has_range else None,
                maximum=dbc_signal.maximum if has_range else None,
                unit=dbc_signal.unit,
                mux_role=mux_role,
                mux_value=mux_value,
                receivers=frozenset(receivers),
            ))
        signal_fields.append(signals)

    def resolve_message(frame_id: int, context: str, position=None) -> Optional[int]:
        index = by_frame_id.get(frame_id)
        if index is None:
            diagnostics.add(reference_error('message', str(frame_id), context, position))
        return index

    def resolve_signal(frame_id: int, signal: str, context: str,
                       position=None) -> Optional[Dict[str, Any]]:
        index = resolve_message(frame_id, context, position)
        if index is None:
            return None
        for fields in signal_fields[index]:
            if fields['name'] == signal:
                return fields
        diagnostics.add(reference_error(
            'signal', f"{message_fields[index]['name']}.{signal}", context, position))
        return None

    # additional transmitters
    for frame_id, nodes in ast.transmitters.items():
        index = resolve_message(frame_id, 'BO_TX_BU_')
        for node_name in nodes:
            node = resolve_node(node_name, f'BO_TX_BU_ {frame_id}')
            if index is not None and node is not None:
                sends.setdefault(node, set()).add(index)

    # float signals
    for value_type in ast.signal_value_types:
        fields = resolve_signal(value_type.frame_id, value_type.signal, 'SIG_VALTYPE_',
                                value_type.position)
        if fields is not None and value_type.value_type in (1, 2):
            fields['kind'] = ValueKind.FLOAT

    # value descriptions
    for descriptions in ast.value_descriptions:
        fields = resolve_signal(descriptions.frame_id, descriptions.signal, 'VAL_',
                                descriptions.position)
        if fields is not None:
            fields['value_table'] = tuple(sorted(descriptions.values.items()))

    # extended multiplexing: a single selector value refines the signal's mN
    for mux in ast.extended_multiplexing:
        fields = resolve_signal(mux.frame_id, mux.signal, 'SG_MUL_VAL_', mux.position)
        selector = resolve_signal(mux.frame_id, mux.selector, 'SG_MUL_VAL_', mux.position)
        if fields is None or selector is None:
            continue
        if len(mux.ranges) == 1 and mux.ranges[0][0] == mux.ranges[0][1]:
            fields['mux_role'] = MuxRole.MULTIPLEXED
            fields['mux_value'] = mux.ranges[0][0]
        else:
            diagnostics.warn(Stage.REFERENCE,
                             f'selector ranges {mux.ranges} for {mux.signal} reduced to '
                             f'{fields.get("mux_value")}', 'multiplex-range', mux.position)

    # comments
    network_comment = ''
    for comment in ast.comments:
        if comment.object_type == '':
            network_comment = comment.text
        elif comment.object_type == 'BU_':
            node = resolve_node(comment.name, 'CM_ BU_', comment.position)
            if node is not None:
                node_extra.setdefault(node, {})['comment'] = comment.text
        elif comment.object_type == 'BO_':
            index = resolve_message(comment.frame_id, 'CM_ BO_', comment.position)
            if index is not None:
                message_fields[index]['comment'] = comment.text
        elif comment.object_type == 'SG_':
            fields = resolve_signal(comment.frame_id, comment.name, 'CM_ SG_', comment.position)
            if fields is not None:
                fields['comment'] = comment.text

    # attributes
    definitions = []
    defined = set()
    for definition in ast.attribute_definitions:
        defined.add(definition.name)
        definitions.append(AttributeDefinition(
            object_type=DBC_OBJECT_TYPES.get(definition.object_type, 'network'),
            name=definition.name,
            value_type=definition.value_type,
            minimum=definition.minimum,
            maximum=definition.maximum,
            choices=tuple(definition.choices),
            default=ast.attribute_defaults.get(definition.name),
        ))
    for default_name in ast.attribute_defaults:
        if default_name not in defined:
            diagnostics.add(reference_error('attribute definition', default_name,
                                            'BA_DEF_DEF_'))

    network_attributes: List[Tuple[str, Any]] = []
    node_attributes: Dict[int, List[Tuple[str, Any]]] = {}
    message_attributes: Dict[int, List[Tuple[str, Any]]] = {}
    for attribute in ast.attributes:
        if attribute.name not in defined:
            diagnostics.add(reference_error('attribute definition', attribute.name, 'BA_',
                                            attribute.position))
            continue
        pair = (attribute.name, attribute.value)
        if attribute.object_type == '':
            network_attributes.append(pair)
        elif attribute.object_type == 'BU_':
            node = resolve_node(attribute.target, f'BA_ {attribute.name}', attribute.position)
            if node is not None:
                node_attributes.setdefault(node, []).append(pair)
        elif attribute.object_type == 'BO_':
            index = resolve_message(attribute.frame_id, f'BA_ {attribute.name}',
                                    attribute.position)
            if index is not None:
                message_attributes.setdefault(index, []).append(pair)
                if attribute.name == CYCLE_TIME_ATTRIBUTE:
                    message_fields[index]['cycle_time_ms'] = float(attribute.value)
        elif attribute.object_type == 'SG_':
            fields = resolve_signal(attribute.frame_id, attribute.target,
                                    f'BA_ {attribute.name}', attribute.position)
            if fields is not None:
                fields['attributes'] = fields.get('attributes', ()) + (pair,)

    for node, pairs in node_attributes.items():
        node_extra.setdefault(node, {})['attributes'] = tuple(pairs)

    messages = []
    for index, fields in enumerate(message_fields):
        fields['attributes'] = tuple(message_attributes.get(index, ()))
        messages.append(Message(signals=tuple(Signal(**s) for s in signal_fields[index]),
                                **fields))

    attributes = dict(network_attributes)
    bitrate = attributes.get('Baudrate')
    return Network(
        name=str(attributes.get('DBName', name)),
        bus_type=BusType.CAN,
        nodes=_freeze_nodes(node_names, sends, receives, node_extra),
        messages=tuple(messages),
        attribute_definitions=tuple(definitions),
        attributes=tuple(network_attributes),
        value_tables=tuple((table, tuple(sorted(values.items())))
                           for table, values in ast.value_tables.items()),
        version=ast.version,
        bitrate=int(bitrate) if isinstance(bitrate, (int, float)) else None,
        comment=network_comment,
    )


# =============================================================================
# LDF
# =============================================================================

def _normalize_ldf(ast: LdfFile, diagnostics: Diagnostics, name: str) -> Network:
    node_names: List[str] = []
    if ast.nodes.master:
        node_names.append(ast.nodes.master)
    node_names.extend(s for s in ast.nodes.slaves if s not in node_names)
    node_index = {n: i for i, n in enumerate(node_names)}
    sends: Dict[int, set] = {}
    receives: Dict[int, set] = {}
    node_extra: Dict[int, Dict[str, Any]] = {}

    def resolve_node(node: str, context: str, position=None) -> Optional[int]:
        index = node_index.get(node)
        if index is None:
            diagnostics.add(reference_error('node', node, context, position))
        return index

    for attrs in ast.node_attributes:
        node = resolve_node(attrs.name, 'Node_attributes', attrs.position)
        if node is not None:
            nad = attrs.configured_nad if attrs.configured_nad is not None else attrs.initial_nad
            node_extra[node] = {'nad': nad}

    signal_defs = {s.name: s for s in ast.signals + ast.diagnostic_signals}
    encodings = {e.name: e for e in ast.encoding_types}
    signal_encoding: Dict[str, LdfEncodingType] = {}
    for encoding_name, signal_names in ast.signal_representations.items():
        encoding = encodings.get(encoding_name)
        if encoding is None:
            diagnostics.add(reference_error('encoding', encoding_name, 'Signal_representation'))
            continue
        for signal_name in signal_names:
            if signal_name not in signal_defs:
                diagnostics.add(reference_error('signal', signal_name,
                                                f'Signal_representation {encoding_name}'))
                continue
            signal_encoding[signal_name] = encoding

    message_fields: List[Dict[str, Any]] = []
    signal_fields: List[List[Dict[str, Any]]] = []
    for frame in ast.frames + ast.diagnostic_frames:
        index = len(message_fields)
        sender = None
        if frame.publisher is not None:
            sender = resolve_node(frame.publisher, f'publisher of frame {frame.name}',
                                  frame.position)
            if sender is not None:
                sends.setdefault(sender, set()).add(index)
        message_fields.append(dict(index=index, name=frame.name, identifier=frame.frame_id,
                                   length=frame.length, sender=sender))
        signals = []
        for placement in frame.signals:
            definition = signal_defs.get(placement.name)
            if definition is None:
                diagnostics.add(reference_error('signal', placement.name,
                                                f'frame {frame.name}', placement.position))
                continue
            receivers = set()
            for subscriber in definition.subscribers:
                node = resolve_node(subscriber, f'subscriber of {definition.name}',
                                    definition.position)
                if node is not None:
                    receivers.add(node)
                    receives.setdefault(node, set()).add(index)
            fields = dict(
                name=definition.name,
                start_bit=placement.offset,
                width=definition.size,
                byte_order=ByteOrder.LITTLE_ENDIAN,
                receivers=frozenset(receivers),
                initial_value=_init_value_to_int(definition.init_value),
            )
            if definition.name in signal_encoding:
                _apply_encoding(fields, signal_encoding[definition.name])
            signals.append(fields)
        signal_fields.append(signals)

    message_index = {f['name']: f['index'] for f in message_fields}
    sporadic = {s.name for s in ast.sporadic_frames}
    event_triggered = {e.name for e in ast.event_triggered_frames}
    for collection in (ast.sporadic_frames, ast.event_triggered_frames):
        for group in collection:
            for frame_name in group.frames:
                if frame_name not in message_index:
                    diagnostics.add(reference_error('frame', frame_name, f'frame {group.name}',
                                                    group.position))

    schedules = []
    membership: Dict[int, set] = {}
    for table in ast.schedule_tables:
        entries = []
        for entry in table.entries:
            target = message_index.get(entry.name)
            if entry.is_command:
                kind = ScheduleEntryKind.COMMAND
            elif entry.name in sporadic:
                kind = ScheduleEntryKind.SPORADIC
            elif entry.name in event_triggered:
                kind = ScheduleEntryKind.EVENT_TRIGGERED
            else:
                kind = ScheduleEntryKind.FRAME
            if target is not None:
                membership.setdefault(target, set()).add(len(schedules))
            entries.append(ScheduleEntry(entry.name, entry.delay_ms, target, kind))
        schedules.append(Schedule(len(schedules), table.name, tuple(entries)))

    messages = tuple(
        Message(signals=tuple(Signal(**s) for s in signal_fields[i]),
                schedules=frozenset(membership.get(i, ())), **fields)
        for i, fields in enumerate(message_fields))

    lin = LinProperties(
        master=node_index.get(ast.nodes.master) if ast.nodes.master else None,
        time_base_ms=ast.nodes.time_base_ms,
        jitter_ms=ast.nodes.jitter_ms,
        channel_name=ast.channel_name,
        protocol_version=ast.protocol_version,
        language_version=ast.language_version,
    )
    return Network(
        name=ast.channel_name or name,
        bus_type=BusType.LIN,
        nodes=_freeze_nodes(node_names, sends, receives, node_extra),
        messages=messages,
        schedules=tuple(schedules),
        version=ast.protocol_version,
        bitrate=int(round(ast.speed_kbps * 1000)) if ast.speed_kbps is not None else None,
        lin=lin,
    )


# =============================================================================
# NCF
# =============================================================================

def _normalize_ncf(ast: NcfFile, diagnostics: Diagnostics, name: str) -> Network:
    node_names = [node.name for node in ast.nodes]
    sends: Dict[int, set] = {}
    receives: Dict[int, set] = {}
    node_extra: Dict[int, Dict[str, Any]] = {}

    message_fields: List[Dict[str, Any]] = []
    signal_fields: List[List[Dict[str, Any]]] = []
    message_index: Dict[str, int] = {}

    for node_no, node in enumerate(ast.nodes):
        nad = node.diagnostic.get('NAD')
        if nad and isinstance(nad[0], int):
            node_extra[node_no] = {'nad': nad[0]}
        encodings = {e.name: e for e in node.encodings}

        for frame in node.frames:
            index = message_index.get(frame.name)
            if index is None:
                index = len(message_fields)
                message_index[frame.name] = index
                message_fields.append(dict(index=index, name=frame.name,
                                           identifier=frame.message_id,
                                           length=frame.length,
                                           cycle_time_ms=frame.max_period_ms))
                signal_fields.append(None)
            fields = message_fields[index]
            if frame.message_id is not None and fields['identifier'] is None:
                fields['identifier'] = frame.message_id

            if frame.is_published:
                sends.setdefault(node_no, set()).add(index)
                if fields.get('sender') is not None:
                    diagnostics.warn(Stage.REFERENCE,
                                     f'frame {frame.name} published by more than one node',
                                     'multiple-publishers', frame.position)
                else:
                    fields['sender'] = node_no
            else:
                receives.setdefault(node_no, set()).add(index)

            # first description wins unless a publisher describes it later
            if signal_fields[index] is not None and not frame.is_published:
                continue
            signals = []
            for ncf_signal in frame.signals:
                signal = dict(name=ncf_signal.name, start_bit=ncf_signal.offset,
                              width=ncf_signal.size, byte_order=ByteOrder.LITTLE_ENDIAN,
                              initial_value=_init_value_to_int(ncf_signal.init_value))
                if ncf_signal.encoding is not None:
                    encoding = encodings.get(ncf_signal.encoding)
                    if encoding is None:
                        diagnostics.add(reference_error(
                            'encoding', ncf_signal.encoding,
                            f'signal {frame.name}.{ncf_signal.name}', ncf_signal.position))
                    else:
                        _apply_encoding(signal, encoding)
                signals.append(signal)
            signal_fields[index] = signals

    # subscribers receive every signal of the frames they subscribe to
    receivers_of: Dict[int, set] = {}
    for node_no, indices in receives.items():
        for index in indices:
            receivers_of.setdefault(index, set()).add(node_no)

    messages = []
    for index, fields in enumerate(message_fields):
        signals = tuple(Signal(receivers=frozenset(receivers_of.get(index, ())), **s)
                        for s in signal_fields[index] or [])
        messages.append(Message(signals=signals, **fields))

    protocol = next((n.protocol_version for n in ast.nodes if n.protocol_version), '')
    return Network(
        name=name or (node_names[0] if node_names else ''),
        bus_type=BusType.LIN,
        nodes=_freeze_nodes(node_names, sends, receives, node_extra),
        messages=tuple(messages),
        version=protocol,
        lin=LinProperties(protocol_version=protocol, language_version=ast.language_version),
    )


NORMALIZERS: Dict[Dialect, Callable[[Any, Diagnostics, str], Network]] = {
    Dialect.DBC: _normalize_dbc,
    Dialect.LDF: _normalize_ldf,
    Dialect.NCF: _normalize_ncf,
}


def normalize(ast: Any, fmt: Union[Dialect, str], diagnostics: Diagnostics,
              name: str = '') -> Network:
    """Convert a parsed syntax tree of the given format into a Network."""
    dialect = fmt if isinstance(fmt, Dialect) else Dialect(fmt.lower())
    before = len(diagnostics)
    network = NORMALIZERS[dialect](ast, diagnostics, name)
    logger.debug('normalized %s: %d nodes, %d messages, %d schedules, %d new diagnostics',
                 dialect.value, len(network.nodes), len(network.messages),
                 len(network.schedules), len(diagnostics) - before)
    return network
