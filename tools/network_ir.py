#!/usr/bin/env python3
"""
network_ir.py - Format-agnostic network model shared by all input formats

The normalizer builds one Network per conversion run; after that the model
is only read. Every dataclass here is frozen and holds tuples and
frozensets, so a Network can be handed to worker threads and compared for
equality (the DBC writer round-trip relies on that).

Relations are plain integer indices into the owning Network's tuples
(Message.sender -> Network.nodes, Node.sends -> Network.messages, ...).
Names are only resolved once, in the normalizer.

Usage:
    from network_ir import Network, network_to_dict

    message = network.message_by_name('EngineData')
    sender = network.nodes[message.sender].name
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

Attributes = Tuple[Tuple[str, Any], ...]


class BusType(Enum):
    CAN = 'CAN'
    LIN = 'LIN'
    OTHER = 'OTHER'


class ByteOrder(Enum):
    BIG_ENDIAN = 'big_endian'        # Motorola
    LITTLE_ENDIAN = 'little_endian'  # Intel


class ValueKind(Enum):
    UNSIGNED = 'unsigned'
    SIGNED = 'signed'
    FLOAT = 'float'


class MuxRole(Enum):
    NONE = 'none'
    SELECTOR = 'selector'
    MULTIPLEXED = 'multiplexed'


class ScheduleEntryKind(Enum):
    FRAME = 'frame'
    SPORADIC = 'sporadic'
    EVENT_TRIGGERED = 'event_triggered'
    COMMAND = 'command'


@dataclass(frozen=True)
class PhysicalRange:
    """One LIN physical_value encoding range."""
    minimum: int
    maximum: int
    scale: float = 1.0
    offset: float = 0.0
    unit: str = ''


@dataclass(frozen=True)
class Signal:
    name: str
    start_bit: int
    width: int
    byte_order: Optional[ByteOrder] = None
    kind: ValueKind = ValueKind.UNSIGNED
    scale: float = 1.0
    offset: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    unit: str = ''
    mux_role: MuxRole = MuxRole.NONE
    mux_value: Optional[int] = None
    receivers: FrozenSet[int] = frozenset()
    value_table: Tuple[Tuple[int, str], ...] = ()
    initial_value: int = 0
    comment: str = ''
    attributes: Attributes = ()
    encoding: Optional[str] = None
    physical_ranges: Tuple[PhysicalRange, ...] = ()

    @property
    def is_signed(self) -> bool:
        return self.kind == ValueKind.SIGNED

    @property
    def is_float(self) -> bool:
        return self.kind == ValueKind.FLOAT

    @property
    def is_multiplexor(self) -> bool:
        return self.mux_role == MuxRole.SELECTOR

    @property
    def is_multiplexed(self) -> bool:
        return self.mux_role == MuxRole.MULTIPLEXED

    def label_for(self, raw: int) -> Optional[str]:
        return dict(self.value_table).get(raw)


@dataclass(frozen=True)
class Message:
    index: int
    name: str
    identifier: Optional[int]
    length: int
    sender: Optional[int] = None
    signals: Tuple[Signal, ...] = ()
    is_extended: bool = False
    schedules: FrozenSet[int] = frozenset()
    cycle_time_ms: Optional[float] = None
    comment: str = ''
    attributes: Attributes = ()

    def signal_by_name(self, name: str) -> Optional[Signal]:
        for signal in self.signals:
            if signal.name == name:
                return signal
        return None

    def signal_index(self, name: str) -> Optional[int]:
        for i, signal in enumerate(self.signals):
            if signal.name == name:
                return i
        return None

    @property
    def selectors(self) -> List[Signal]:
        return [s for s in self.signals if s.is_multiplexor]

    @property
    def selector(self) -> Optional[Signal]:
        """The multiplexor signal, when there is exactly one."""
        selectors = self.selectors
        return selectors[0] if len(selectors) == 1 else None

    @property
    def is_multiplexed(self) -> bool:
        return any(s.is_multiplexed for s in self.signals)

    def multiplex_groups(self) -> Dict[int, List[Signal]]:
        """Multiplexed signals keyed by the selector value that activates them."""
        groups: Dict[int, List[Signal]] = {}
        for signal in self.signals:
            if signal.is_multiplexed:
                groups.setdefault(signal.mux_value, []).append(signal)
        return dict(sorted(groups.items()))

    def display_id(self) -> str:
        if self.identifier is None:
            return '-'
        return f'0x{self.identifier:08X}' if self.is_extended else f'0x{self.identifier:03X}'


@dataclass(frozen=True)
class Node:
    index: int
    name: str
    sends: FrozenSet[int] = frozenset()
    receives: FrozenSet[int] = frozenset()
    comment: str = ''
    attributes: Attributes = ()
    nad: Optional[int] = None


@dataclass(frozen=True)
class ScheduleEntry:
    name: str
    delay_ms: float
    message: Optional[int] = None
    kind: ScheduleEntryKind = ScheduleEntryKind.FRAME


@dataclass(frozen=True)
class Schedule:
    index: int
    name: str
    entries: Tuple[ScheduleEntry, ...] = ()

    @property
    def cycle_ms(self) -> float:
        return sum(entry.delay_ms for entry in self.entries)


@dataclass(frozen=True)
class AttributeDefinition:
    object_type: str  # network, node, message, signal, env
    name: str
    value_type: str  # INT, HEX, FLOAT, STRING, ENUM
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Tuple[str, ...] = ()
    default: Any = None


@dataclass(frozen=True)
class LinProperties:
    master: Optional[int] = None
    time_base_ms: float = 0.0
    jitter_ms: float = 0.0
    channel_name: str = ''
    protocol_version: str = ''
    language_version: str = ''


@dataclass(frozen=True)
class Network:
    name: str
    bus_type: BusType
    nodes: Tuple[Node, ...] = ()
    messages: Tuple[Message, ...] = ()
    schedules: Tuple[Schedule, ...] = ()
    attribute_definitions: Tuple[AttributeDefinition, ...] = ()
    attributes: Attributes = ()
    value_tables: Tuple[Tuple[str, Tuple[Tuple[int, str], ...]], ...] = ()
    version: str = ''
    bitrate: Optional[int] = None
    lin: Optional[LinProperties] = None
    comment: str = ''

    def node_by_name(self, name: str) -> Optional[Node]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def message_by_name(self, name: str) -> Optional[Message]:
        for message in self.messages:
            if message.name == name:
                return message
        return None

    def message_by_id(self, identifier: int) -> Optional[Message]:
        for message in self.messages:
            if message.identifier == identifier:
                return message
        return None

    def schedule_by_name(self, name: str) -> Optional[Schedule]:
        for schedule in self.schedules:
            if schedule.name == name:
                return schedule
        return None


# =============================================================================
# Plain-data view (YAML dumps, debugging)
# =============================================================================

def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, frozenset):
        return sorted(value)
    if hasattr(value, '__dataclass_fields__'):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (tuple, list)):
        return [_plain(v) for v in value]
    return value


def network_to_dict(network: Network) -> Dict[str, Any]:
    """Convert a Network to plain dicts/lists suitable for yaml.safe_dump."""
    data = _plain(network)
    # pairs read better as mappings
    for message in data['messages']:
        message['attributes'] = dict(message['attributes'])
        for signal in message['signals']:
            signal['attributes'] = dict(signal['attributes'])
            signal['value_table'] = dict(signal['value_table'])
    for node in data['nodes']:
        node['attributes'] = dict(node['attributes'])
    data['attributes'] = dict(data['attributes'])
    data['value_tables'] = {name: dict(pairs) for name, pairs in data['value_tables']}
    return data
