#!/usr/bin/env python3
"""
ldf_parser.py - Recursive-descent parser for LIN description files (LDF)

Covers the LIN 2.x LDF grammar: header and bus speed, node composition,
signals, frames (unconditional, sporadic, event-triggered, diagnostic),
node attributes, schedule tables, signal encoding types and signal
representations.

Recovery model
--------------
Every block is a list of items terminated by ';' or by a nested {...}
group. A malformed item is reported and skipped up to its terminator, so
the rest of the block still parses. Unknown top-level blocks are skipped
with a warning. A missing file header or a block that is still open at
end of file cannot be recovered and raises ParseError.

Usage:
    from description_lexer import tokenize, Dialect
    from ldf_parser import parse_ldf

    ast, diagnostics = parse_ldf(tokenize(text, Dialect.LDF))
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from description_lexer import Dialect, Token, TokenKind, TokenStream, tokenize
from diagnostics import Diagnostic, ParseError, Severity, SourcePosition, Stage

logger = logging.getLogger(__name__)

KNOWN_LIN_VERSIONS = ('1.3', '2.0', '2.1', '2.2', 'ISO17987:2015', 'J2602_1_1.0')

# Diagnostic frames with fixed identifiers
MASTER_REQUEST = 'MasterReq'
SLAVE_RESPONSE = 'SlaveResp'
DIAGNOSTIC_FRAME_IDS = {MASTER_REQUEST: 0x3C, SLAVE_RESPONSE: 0x3D}

InitValue = Union[int, List[int]]


# =============================================================================
# Syntax tree
# =============================================================================

@dataclass
class LdfNodes:
    master: Optional[str] = None
    time_base_ms: float = 0.0
    jitter_ms: float = 0.0
    slaves: List[str] = field(default_factory=list)


@dataclass
class LdfSignal:
    """
    Example::

        MotorSpeed : 16, 0, Master, Slave1, Slave2 ;
    """
    name: str
    size: int
    init_value: InitValue = 0
    publisher: Optional[str] = None
    subscribers: List[str] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class LdfFrameSignal:
    name: str
    offset: int
    position: Optional[SourcePosition] = None


@dataclass
class LdfFrame:
    """
    Example::

        VL1_CEM_Frm1 : 0x01, CEM, 1 { InternalLightsRequest, 0 ; }
    """
    name: str
    frame_id: int
    publisher: Optional[str]
    length: int
    signals: List[LdfFrameSignal] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class LdfSporadicFrame:
    name: str
    frames: List[str] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class LdfEventTriggeredFrame:
    name: str
    frame_id: int
    frames: List[str] = field(default_factory=list)
    collision_table: Optional[str] = None
    position: Optional[SourcePosition] = None


@dataclass
class LdfNodeAttributes:
    name: str
    protocol: str = ''
    configured_nad: Optional[int] = None
    initial_nad: Optional[int] = None
    product_id: List[int] = field(default_factory=list)
    response_error: Optional[str] = None
    fault_state_signals: List[str] = field(default_factory=list)
    configurable_frames: List[str] = field(default_factory=list)
    extra: Dict[str, List[Any]] = field(default_factory=dict)
    position: Optional[SourcePosition] = None


@dataclass
class LdfScheduleEntry:
    """A schedule slot: a frame name or a diagnostic command."""
    name: str
    delay_ms: float
    arguments: List[Any] = field(default_factory=list)
    is_command: bool = False
    position: Optional[SourcePosition] = None


@dataclass
class LdfScheduleTable:
    name: str
    entries: List[LdfScheduleEntry] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class LdfEncodingValue:
    """
    kind is one of logical, physical, bcd, ascii.

    Examples::

        logical_value, 0, "off" ;
        physical_value, 0, 250, 0.5, -40, "degC" ;
    """
    kind: str
    minimum: int = 0
    maximum: int = 0
    scale: float = 1.0
    offset: float = 0.0
    text: str = ''


@dataclass
class LdfEncodingType:
    name: str
    values: List[LdfEncodingValue] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class LdfFile:
    protocol_version: str = ''
    language_version: str = ''
    speed_kbps: Optional[float] = None
    channel_name: str = ''
    nodes: LdfNodes = field(default_factory=LdfNodes)
    signals: List[LdfSignal] = field(default_factory=list)
    diagnostic_signals: List[LdfSignal] = field(default_factory=list)
    frames: List[LdfFrame] = field(default_factory=list)
    sporadic_frames: List[LdfSporadicFrame] = field(default_factory=list)
    event_triggered_frames: List[LdfEventTriggeredFrame] = field(default_factory=list)
    diagnostic_frames: List[LdfFrame] = field(default_factory=list)
    node_attributes: List[LdfNodeAttributes] = field(default_factory=list)
    schedule_tables: List[LdfScheduleTable] = field(default_factory=list)
    encoding_types: List[LdfEncodingType] = field(default_factory=list)
    signal_representations: Dict[str, List[str]] = field(default_factory=dict)


def _integers(values: List[Any], key: Token) -> List[int]:
    for value in values:
        if not isinstance(value, int):
            raise ParseError('integer', repr(value), key.position)
    return values


# =============================================================================
# Shared block machinery (also used by ncf_parser)
# =============================================================================

class LinBlockParser:
    """Brace-block helpers shared by the LDF and NCF grammars."""

    def __init__(self, tokens: Iterable[Token]):
        self.stream = TokenStream(tokens)
        self.diagnostics: List[Diagnostic] = []

    def _record(self, error: ParseError, context: str = '') -> None:
        self.diagnostics.append(error.to_diagnostic(context))

    def _warn(self, message: str, position: Optional[SourcePosition] = None,
              code: str = '') -> None:
        logger.warning('%s%s', message, f' at {position}' if position else '')
        self.diagnostics.append(Diagnostic(Stage.PARSE, message, code, Severity.WARNING,
                                           position=position))

    def _skip_item(self) -> None:
        """Skip the current item: up to ';' or past its balanced {...} group,
        stopping before the '}' that closes the enclosing block."""
        stream = self.stream
        depth = 0
        while not stream.at_eof:
            token = stream.peek()
            if token.is_punct('}'):
                if depth == 0:
                    return
                stream.next()
                depth -= 1
                if depth == 0:
                    return
                continue
            stream.next()
            if token.is_punct('{'):
                depth += 1
            elif token.is_punct(';') and depth == 0:
                return

    def _skip_block(self) -> None:
        """Skip a {...} group whose opening brace is the next token."""
        stream = self.stream
        stream.expect_punct('{')
        depth = 1
        while depth:
            if stream.at_eof:
                token = stream.peek()
                raise ParseError("'}'", 'end of file', token.position)
            token = stream.next()
            if token.is_punct('{'):
                depth += 1
            elif token.is_punct('}'):
                depth -= 1

    def _block_items(self, parse_item: Callable[[], None], context: str) -> None:
        """Parse `{ item* }`, recovering per item."""
        stream = self.stream
        stream.expect_punct('{')
        while not stream.accept_punct('}'):
            if stream.at_eof:
                raise ParseError("'}'", f'end of file (unclosed {context})',
                                 stream.peek().position)
            token = stream.peek()
            try:
                parse_item()
            except ParseError as e:
                self._record(e, context=f'{context} item at {token.position}')
                self._skip_item()

    def _number_with_unit(self, unit: str = None) -> float:
        value = float(self.stream.expect_number())
        if unit is not None:
            self.stream.expect_ident(unit)
        else:
            # optional unit identifier (ms, kbps, bits, ...)
            if self.stream.peek().kind == TokenKind.IDENT:
                self.stream.next()
        return value

    def _value(self) -> Any:
        token = self.stream.peek()
        if token.is_number:
            value = self.stream.next().value
            nxt = self.stream.peek()
            if nxt.kind == TokenKind.IDENT and nxt.value in ('ms', 'kbps', 'bits', 'us'):
                self.stream.next()
            return value
        if token.kind in (TokenKind.STRING, TokenKind.IDENT):
            return self.stream.next().value
        raise ParseError('value', token.describe(), token.position)

    def _value_list(self, terminator: str = ';') -> List[Any]:
        """Comma-separated values up to and including `terminator`."""
        values = [self._value()]
        while self.stream.accept_punct(','):
            values.append(self._value())
        self.stream.expect_punct(terminator)
        return values

    def _assignment(self) -> Tuple[str, List[Any]]:
        """`key = value [, value]* ;`"""
        key = self.stream.expect_ident()
        self.stream.expect_punct('=')
        return key, self._value_list()

    def _version_string(self, key: str) -> str:
        stream = self.stream
        stream.expect_ident(key)
        stream.expect_punct('=')
        token = stream.peek()
        version = stream.expect_string()
        stream.expect_punct(';')
        if version not in KNOWN_LIN_VERSIONS:
            self._warn(f'{key} {version!r} is not a known LIN version', token.position,
                       'unknown-version')
        return version

    def _init_value(self) -> InitValue:
        stream = self.stream
        if stream.accept_punct('{'):
            values = [stream.expect_int()]
            while stream.accept_punct(','):
                values.append(stream.expect_int())
            stream.expect_punct('}')
            return values
        return stream.expect_int()

    def _encoding_type(self) -> LdfEncodingType:
        start = self.stream.peek()
        encoding = LdfEncodingType(self.stream.expect_ident(), position=start.position)
        self._block_items(lambda: encoding.values.append(self._encoding_value()),
                          f'encoding {encoding.name}')
        return encoding

    def _encoding_value(self) -> LdfEncodingValue:
        stream = self.stream
        token = stream.peek()
        kind = stream.expect_ident()
        if kind == 'logical_value':
            stream.expect_punct(',')
            value = stream.expect_int()
            text = ''
            if stream.accept_punct(','):
                text = stream.expect_string()
            stream.expect_punct(';')
            return LdfEncodingValue('logical', value, value, text=text)
        if kind == 'physical_value':
            stream.expect_punct(',')
            minimum = stream.expect_int()
            stream.expect_punct(',')
            maximum = stream.expect_int()
            stream.expect_punct(',')
            scale = float(stream.expect_number())
            stream.expect_punct(',')
            offset = float(stream.expect_number())
            unit = ''
            if stream.accept_punct(','):
                unit = stream.expect_string()
            stream.expect_punct(';')
            return LdfEncodingValue('physical', minimum, maximum, scale, offset, unit)
        if kind in ('bcd_value', 'ascii_value'):
            stream.expect_punct(';')
            return LdfEncodingValue(kind.split('_')[0])
        raise ParseError('encoding value kind', token.describe(), token.position)


# =============================================================================
# LDF parser
# =============================================================================

class LDFParser(LinBlockParser):
    """Parse one LDF token stream into an LdfFile plus diagnostics."""

    def __init__(self, tokens: Iterable[Token]):
        super().__init__(tokens)
        self.ast = LdfFile()
        self._blocks = {
            'Nodes': self._parse_nodes,
            'Signals': lambda: self._block_items(
                lambda: self.ast.signals.append(self._parse_signal()), 'Signals'),
            'Diagnostic_signals': lambda: self._block_items(
                lambda: self.ast.diagnostic_signals.append(self._parse_signal()),
                'Diagnostic_signals'),
            'Frames': lambda: self._block_items(self._parse_frame, 'Frames'),
            'Sporadic_frames': lambda: self._block_items(self._parse_sporadic_frame,
                                                         'Sporadic_frames'),
            'Event_triggered_frames': lambda: self._block_items(
                self._parse_event_triggered_frame, 'Event_triggered_frames'),
            'Diagnostic_frames': lambda: self._block_items(self._parse_diagnostic_frame,
                                                           'Diagnostic_frames'),
            'Node_attributes': lambda: self._block_items(self._parse_node_attributes,
                                                         'Node_attributes'),
            'Schedule_tables': lambda: self._block_items(self._parse_schedule_table,
                                                         'Schedule_tables'),
            'Signal_encoding_types': lambda: self._block_items(self._parse_encoding_type,
                                                               'Signal_encoding_types'),
            'Signal_representation': lambda: self._block_items(
                self._parse_signal_representation, 'Signal_representation'),
        }

    def parse(self) -> Tuple[LdfFile, List[Diagnostic]]:
        stream = self.stream
        header = stream.peek()
        if not header.is_ident('LIN_description_file'):
            raise ParseError('LIN_description_file', header.describe(), header.position)
        stream.next()
        stream.expect_punct(';')

        while not stream.at_eof:
            token = stream.peek()
            try:
                self._parse_top_level(token)
            except ParseError as e:
                if stream.at_eof:
                    raise
                self._record(e, context=f'top-level statement at {token.position}')
                self._skip_item()
                stream.accept_punct('}')
        return self.ast, self.diagnostics

    def _parse_top_level(self, token: Token) -> None:
        stream = self.stream
        name = token.value
        if name == 'LIN_protocol_version':
            self.ast.protocol_version = self._version_string(name)
        elif name == 'LIN_language_version':
            self.ast.language_version = self._version_string(name)
        elif name == 'LIN_speed':
            stream.next()
            stream.expect_punct('=')
            self.ast.speed_kbps = self._number_with_unit('kbps')
            stream.expect_punct(';')
        elif name == 'Channel_name':
            stream.next()
            stream.expect_punct('=')
            self.ast.channel_name = str(self._value())
            stream.expect_punct(';')
        elif token.kind == TokenKind.IDENT and name in self._blocks:
            stream.next()
            self._blocks[name]()
        elif token.kind == TokenKind.IDENT:
            stream.next()
            if stream.peek().is_punct('{'):
                self._warn(f'skipping unsupported block {name}', token.position,
                           'unsupported-block')
                self._skip_block()
            else:
                self._warn(f'skipping unsupported statement {name}', token.position,
                           'unsupported-statement')
                self._skip_item()
        else:
            raise ParseError('statement', token.describe(), token.position)

    # -------------------------------------------------------------------- nodes

    def _parse_nodes(self) -> None:
        nodes = self.ast.nodes

        def item():
            stream = self.stream
            key = stream.expect_ident()
            stream.expect_punct(':')
            if key == 'Master':
                nodes.master = stream.expect_ident()
                stream.expect_punct(',')
                nodes.time_base_ms = self._number_with_unit('ms')
                stream.expect_punct(',')
                nodes.jitter_ms = self._number_with_unit('ms')
                # LIN 2.2 adds bit length and tolerance; not modelled
                while stream.accept_punct(','):
                    self._value()
                    stream.accept_punct('%')
                stream.expect_punct(';')
            elif key == 'Slaves':
                nodes.slaves.extend(str(v) for v in self._value_list())
            else:
                raise ParseError('Master or Slaves', key, stream.previous.position)

        self._block_items(item, 'Nodes')

    # ------------------------------------------------------------------ signals

    def _parse_signal(self) -> LdfSignal:
        stream = self.stream
        start = stream.peek()
        name = stream.expect_ident()
        stream.expect_punct(':')
        size = stream.expect_int()
        stream.expect_punct(',')
        signal = LdfSignal(name=name, size=size, init_value=self._init_value(),
                           position=start.position)
        if stream.accept_punct(','):
            signal.publisher = stream.expect_ident()
            while stream.accept_punct(','):
                signal.subscribers.append(stream.expect_ident())
        stream.expect_punct(';')
        return signal

    # ------------------------------------------------------------------- frames

    def _frame_body(self, frame: LdfFrame) -> None:
        def item():
            token = self.stream.peek()
            sig = self.stream.expect_ident()
            self.stream.expect_punct(',')
            offset = self.stream.expect_int()
            self.stream.expect_punct(';')
            frame.signals.append(LdfFrameSignal(sig, offset, token.position))

        self._block_items(item, f'frame {frame.name}')

    def _parse_frame(self) -> None:
        stream = self.stream
        start = stream.peek()
        name = stream.expect_ident()
        stream.expect_punct(':')
        frame_id = stream.expect_int()
        stream.expect_punct(',')
        publisher = stream.expect_ident()
        stream.expect_punct(',')
        length = stream.expect_int()
        frame = LdfFrame(name, frame_id, publisher, length, position=start.position)
        self.ast.frames.append(frame)
        self._frame_body(frame)

    def _parse_diagnostic_frame(self) -> None:
        stream = self.stream
        start = stream.peek()
        name = stream.expect_ident()
        stream.expect_punct(':')
        frame_id = stream.expect_int()
        publisher = None
        # MasterReq is published by the master, SlaveResp by whichever slave answers
        if name == MASTER_REQUEST:
            publisher = self.ast.nodes.master
        frame = LdfFrame(name, frame_id, publisher, 8, position=start.position)
        self.ast.diagnostic_frames.append(frame)
        self._frame_body(frame)

    def _parse_sporadic_frame(self) -> None:
        stream = self.stream
        start = stream.peek()
        name = stream.expect_ident()
        stream.expect_punct(':')
        frames = [str(v) for v in self._value_list()]
        self.ast.sporadic_frames.append(LdfSporadicFrame(name, frames, start.position))

    def _parse_event_triggered_frame(self) -> None:
        stream = self.stream
        start = stream.peek()
        name = stream.expect_ident()
        stream.expect_punct(':')
        collision_table = None
        if stream.peek().kind == TokenKind.IDENT:
            collision_table = stream.expect_ident()
            stream.expect_punct(',')
        frame_id = stream.expect_int()
        frames = []
        while stream.accept_punct(','):
            frames.append(stream.expect_ident())
        stream.expect_punct(';')
        self.ast.event_triggered_frames.append(
            LdfEventTriggeredFrame(name, frame_id, frames, collision_table, start.position))

    # ---------------------------------------------------------- node attributes

    def _parse_node_attributes(self) -> None:
        stream = self.stream
        start = stream.peek()
        attrs = LdfNodeAttributes(stream.expect_ident(), position=start.position)
        self.ast.node_attributes.append(attrs)

        def item():
            key = stream.peek()
            if key.is_ident('configurable_frames'):
                stream.next()

                def frame_item():
                    attrs.configurable_frames.append(stream.expect_ident())
                    if stream.accept_punct('='):
                        stream.expect_int()
                    stream.expect_punct(';')

                self._block_items(frame_item, 'configurable_frames')
                return
            name, values = self._assignment()
            if name == 'LIN_protocol':
                attrs.protocol = str(values[0])
            elif name == 'configured_NAD':
                attrs.configured_nad = _integers(values, key)[0]
            elif name == 'initial_NAD':
                attrs.initial_nad = _integers(values, key)[0]
            elif name == 'product_id':
                attrs.product_id = _integers(values, key)
            elif name == 'response_error':
                attrs.response_error = str(values[0])
            elif name == 'fault_state_signals':
                attrs.fault_state_signals = [str(v) for v in values]
            else:
                attrs.extra[name] = values

        self._block_items(item, f'node attributes {attrs.name}')

    # ---------------------------------------------------------- schedule tables

    def _parse_schedule_table(self) -> None:
        stream = self.stream
        start = stream.peek()
        table = LdfScheduleTable(stream.expect_ident(), position=start.position)
        self.ast.schedule_tables.append(table)

        def item():
            token = stream.peek()
            name = stream.expect_ident()
            entry = LdfScheduleEntry(name, 0.0, position=token.position)
            if stream.accept_punct('{'):
                entry.is_command = True
                while not stream.accept_punct('}'):
                    entry.arguments.append(self._value())
                    stream.accept_punct(',')
            elif name in DIAGNOSTIC_FRAME_IDS:
                entry.is_command = True
            stream.expect_ident('delay')
            entry.delay_ms = self._number_with_unit('ms')
            stream.expect_punct(';')
            table.entries.append(entry)

        self._block_items(item, f'schedule table {table.name}')

    # ---------------------------------------------------------------- encodings

    def _parse_encoding_type(self) -> None:
        self.ast.encoding_types.append(self._encoding_type())

    def _parse_signal_representation(self) -> None:
        stream = self.stream
        encoding = stream.expect_ident()
        stream.expect_punct(':')
        signals = [str(v) for v in self._value_list()]
        self.ast.signal_representations.setdefault(encoding, []).extend(signals)


def parse_ldf(tokens: Iterable[Token]) -> Tuple[LdfFile, List[Diagnostic]]:
    """Parse LDF tokens into a syntax tree and recoverable diagnostics.

    Raises ParseError when the file header is missing or a block is left
    open at end of file.
    """
    return LDFParser(tokens).parse()


def parse_ldf_text(text: str) -> Tuple[LdfFile, List[Diagnostic]]:
    return parse_ldf(tokenize(text, Dialect.LDF))
