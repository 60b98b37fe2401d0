#!/usr/bin/env python3
"""
ncf_parser.py - Parser for LIN node capability files (NCF)

An NCF describes one or more slave nodes on their own: what the node
publishes and subscribes to, how its signals are encoded and how it is
diagnosed. There is no bus-level schedule and frames normally carry no
identifier (the system integrator assigns one when building the LDF), so
the optional `message_ID` is the only source of a frame identifier.

    node_capability_file ;
    LIN_language_version = "2.1" ;
    node step_motor {
        general { LIN_protocol_version = "2.1" ; supplier = 0x0005 ; ... }
        diagnostic { NAD = 1 to 3 ; ... }
        frames {
            publish node_status {
                length = 4 ; min_period = 10 ms ; max_period = 100 ms ;
                signals { state { size = 8 ; init_value = 0 ; offset = 0 ; motor_state ; } }
            }
        }
        encoding { motor_state { logical_value, 0, "off" ; } }
        status_management { response_error = error_bit ; }
        free_text { "..." }
    }

Usage:
    from ncf_parser import parse_ncf_text

    ast, diagnostics = parse_ncf_text(open('motor.ncf').read())
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from description_lexer import Dialect, Token, TokenKind, tokenize
from diagnostics import Diagnostic, ParseError, SourcePosition
from ldf_parser import InitValue, LdfEncodingType, LinBlockParser

logger = logging.getLogger(__name__)


@dataclass
class NcfSignal:
    name: str
    size: int = 0
    init_value: InitValue = 0
    offset: int = 0
    encoding: Optional[str] = None
    position: Optional[SourcePosition] = None


@dataclass
class NcfFrame:
    name: str
    direction: str                       # 'publish' or 'subscribe'
    length: int = 0
    min_period_ms: Optional[float] = None
    max_period_ms: Optional[float] = None
    message_id: Optional[int] = None
    event_triggered_frame: Optional[str] = None
    signals: List[NcfSignal] = field(default_factory=list)
    position: Optional[SourcePosition] = None

    @property
    def is_published(self) -> bool:
        return self.direction == 'publish'


@dataclass
class NcfNode:
    name: str
    protocol_version: str = ''
    general: Dict[str, List[Any]] = field(default_factory=dict)
    diagnostic: Dict[str, List[Any]] = field(default_factory=dict)
    frames: List[NcfFrame] = field(default_factory=list)
    encodings: List[LdfEncodingType] = field(default_factory=list)
    response_error: Optional[str] = None
    fault_state_signals: List[str] = field(default_factory=list)
    free_text: str = ''
    position: Optional[SourcePosition] = None


@dataclass
class NcfFile:
    language_version: str = ''
    nodes: List[NcfNode] = field(default_factory=list)


class NCFParser(LinBlockParser):
    """Parse one NCF token stream into an NcfFile plus diagnostics."""

    def __init__(self, tokens: Iterable[Token]):
        super().__init__(tokens)
        self.ast = NcfFile()

    def parse(self) -> Tuple[NcfFile, List[Diagnostic]]:
        stream = self.stream
        header = stream.peek()
        if not header.is_ident('node_capability_file'):
            raise ParseError('node_capability_file', header.describe(), header.position)
        stream.next()
        stream.expect_punct(';')

        while not stream.at_eof:
            token = stream.peek()
            try:
                if token.is_ident('LIN_language_version'):
                    self.ast.language_version = self._version_string('LIN_language_version')
                elif token.is_ident('node'):
                    stream.next()
                    self._parse_node()
                else:
                    raise ParseError("'node'", token.describe(), token.position)
            except ParseError as e:
                if stream.at_eof:
                    raise
                self._record(e, context=f'top-level statement at {token.position}')
                self._skip_item()
                stream.accept_punct('}')
        return self.ast, self.diagnostics

    def _words(self) -> List[Any]:
        """Loose value list up to ';' (e.g. `automatic min 10 kbps max 20 kbps`).

        Commas are separators and unit words are kept.
        """
        stream = self.stream
        values = []
        while not stream.accept_punct(';'):
            token = stream.peek()
            if token.is_punct(','):
                stream.next()
                continue
            if token.kind == TokenKind.EOF or token.kind == TokenKind.PUNCT:
                raise ParseError("';'", token.describe(), token.position)
            values.append(stream.next().value)
        return values

    def _key_values(self, target: Dict[str, List[Any]], context: str) -> None:
        def item():
            key = self.stream.expect_ident()
            if self.stream.accept_punct('{'):
                # support_sid { 0xB0, 0xB2 } [;]
                values = []
                while not self.stream.accept_punct('}'):
                    values.append(self._value())
                    self.stream.accept_punct(',')
                self.stream.accept_punct(';')
                target[key] = values
                return
            self.stream.expect_punct('=')
            target[key] = self._words()

        self._block_items(item, context)

    def _parse_node(self) -> None:
        stream = self.stream
        start = stream.peek()
        node = NcfNode(stream.expect_ident(), position=start.position)
        self.ast.nodes.append(node)
        logger.debug('NCF node %s', node.name)

        def section():
            token = stream.peek()
            name = stream.expect_ident()
            if name == 'general':
                self._key_values(node.general, f'{node.name} general')
                version = node.general.get('LIN_protocol_version')
                if version:
                    node.protocol_version = str(version[0])
            elif name == 'diagnostic':
                self._key_values(node.diagnostic, f'{node.name} diagnostic')
            elif name == 'frames':
                self._block_items(lambda: self._parse_frame(node), f'{node.name} frames')
            elif name == 'encoding':
                self._block_items(lambda: node.encodings.append(self._encoding_type()),
                                  f'{node.name} encoding')
            elif name == 'status_management':
                status: Dict[str, List[Any]] = {}
                self._key_values(status, f'{node.name} status_management')
                if status.get('response_error'):
                    node.response_error = str(status['response_error'][0])
                node.fault_state_signals = [str(v) for v in status.get('fault_state_signals', [])]
            elif name == 'free_text':
                stream.expect_punct('{')
                node.free_text = stream.expect_string()
                stream.expect_punct('}')
            else:
                self._warn(f'skipping unsupported NCF section {name}', token.position,
                           'unsupported-block')
                self._skip_block()

        self._block_items(section, f'node {node.name}')

    def _parse_frame(self, node: NcfNode) -> None:
        stream = self.stream
        start = stream.peek()
        direction = stream.expect_ident()
        if direction not in ('publish', 'subscribe'):
            raise ParseError('publish or subscribe', start.describe(), start.position)
        frame = NcfFrame(stream.expect_ident(), direction, position=start.position)
        node.frames.append(frame)

        def item():
            key = stream.expect_ident()
            if key == 'signals':
                self._block_items(lambda: frame.signals.append(self._parse_signal()),
                                  f'frame {frame.name} signals')
                return
            stream.expect_punct('=')
            if key == 'length':
                frame.length = stream.expect_int()
            elif key == 'min_period':
                frame.min_period_ms = self._number_with_unit('ms')
            elif key == 'max_period':
                frame.max_period_ms = self._number_with_unit('ms')
            elif key == 'message_ID':
                frame.message_id = stream.expect_int()
            elif key == 'event_triggered_frame':
                frame.event_triggered_frame = stream.expect_ident()
            else:
                self._words()
                return
            stream.expect_punct(';')

        self._block_items(item, f'frame {frame.name}')

    def _parse_signal(self) -> NcfSignal:
        stream = self.stream
        start = stream.peek()
        signal = NcfSignal(stream.expect_ident(), position=start.position)

        def item():
            key = stream.expect_ident()
            if stream.accept_punct(';'):
                # bare identifier names the signal's encoding
                signal.encoding = key
                return
            stream.expect_punct('=')
            if key == 'size':
                signal.size = stream.expect_int()
            elif key == 'init_value':
                signal.init_value = self._init_value()
            elif key == 'offset':
                signal.offset = stream.expect_int()
            else:
                self._words()
                return
            stream.expect_punct(';')

        self._block_items(item, f'signal {signal.name}')
        return signal


def parse_ncf(tokens: Iterable[Token]) -> Tuple[NcfFile, List[Diagnostic]]:
    """Parse NCF tokens; raises ParseError for a missing header or an open block at EOF."""
    return NCFParser(tokens).parse()


def parse_ncf_text(text: str) -> Tuple[NcfFile, List[Diagnostic]]:
    return parse_ncf(tokenize(text, Dialect.NCF))
