#!/usr/bin/env python3
"""
dbc_parser.py - Recursive-descent parser for Vector DBC (CAN) files

Produces a DbcFile syntax tree that mirrors the DBC grammar; no
cross-references are resolved here (see normalizer.py).

Recovery model
--------------
DBC files are a sequence of keyword-led sections, each starting at the
beginning of a line (BO_, CM_, BA_DEF_, ...). When a section does not
match the grammar, a ParseError diagnostic is recorded and tokens are
discarded until the next line that starts with a section keyword. Signal
lines inside a BO_ block recover individually, so one bad SG_ line does
not lose the rest of the message.

Usage:
    from description_lexer import tokenize, Dialect
    from dbc_parser import parse_dbc

    ast, diagnostics = parse_dbc(tokenize(text, Dialect.DBC))
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from description_lexer import Dialect, Token, TokenKind, TokenStream, tokenize
from diagnostics import Diagnostic, ParseError, SourcePosition

logger = logging.getLogger(__name__)

NULL_NODE = 'Vector__XXX'

SECTION_KEYWORDS = {
    'VERSION', 'NS_', 'BS_', 'BU_', 'VAL_TABLE_', 'BO_', 'BO_TX_BU_',
    'CM_', 'BA_DEF_', 'BA_DEF_DEF_', 'BA_', 'VAL_', 'SIG_VALTYPE_',
    'SG_MUL_VAL_', 'EV_',
}

# Known Vector keywords that carry nothing the network model uses.
IGNORED_KEYWORDS = {
    'BA_DEF_REL_', 'BA_REL_', 'BA_DEF_DEF_REL_', 'BU_SG_REL_', 'BU_EV_REL_',
    'BU_BO_REL_', 'SIG_GROUP_', 'SGTYPE_', 'SGTYPE_VAL_', 'BA_DEF_SGTYPE_',
    'BA_SGTYPE_', 'SIG_TYPE_REF_', 'CAT_DEF_', 'CAT_', 'FILTER',
    'ENVVAR_DATA_', 'EV_DATA_', 'SIG_VALTYPE_REF_',
}

OBJECT_KEYWORDS = ('BU_', 'BO_', 'SG_', 'EV_')

AttributeValue = Union[int, float, str]


# =============================================================================
# Syntax tree
# =============================================================================

@dataclass
class DbcSignal:
    """
    One SG_ line.

    Example::

        SG_ Frequency m3 : 23|16@0+ (0.001,10) [10|75] "Hz" ABC,DEF
    """
    name: str
    start_bit: int
    length: int
    little_endian: bool
    signed: bool
    factor: float = 1.0
    offset: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    unit: str = ''
    receivers: List[str] = field(default_factory=list)
    multiplex: Optional[str] = None  # 'M', 'm3' or 'm3M'
    position: Optional[SourcePosition] = None

    @property
    def is_multiplexor(self) -> bool:
        return self.multiplex is not None and self.multiplex.endswith('M')

    @property
    def multiplex_value(self) -> Optional[int]:
        if self.multiplex is None or not self.multiplex.startswith('m'):
            return None
        return int(self.multiplex[1:].rstrip('M'))


@dataclass
class DbcMessage:
    """
    One BO_ block.

    Example::

        BO_ 2566903475 ConverterInputOutput: 8 DCDC
    """
    frame_id: int
    name: str
    dlc: int
    transmitter: Optional[str]
    signals: List[DbcSignal] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class DbcComment:
    object_type: str  # '' for the network, else BU_/BO_/SG_/EV_
    text: str
    frame_id: Optional[int] = None
    name: Optional[str] = None
    position: Optional[SourcePosition] = None


@dataclass
class DbcAttributeDefinition:
    object_type: str
    name: str
    value_type: str  # INT, HEX, FLOAT, STRING, ENUM
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: List[str] = field(default_factory=list)
    position: Optional[SourcePosition] = None


@dataclass
class DbcAttribute:
    name: str
    value: AttributeValue
    object_type: str = ''
    frame_id: Optional[int] = None
    target: Optional[str] = None
    position: Optional[SourcePosition] = None


@dataclass
class DbcValueDescriptions:
    frame_id: int
    signal: str
    values: Dict[int, str]
    position: Optional[SourcePosition] = None


@dataclass
class DbcSignalValueType:
    frame_id: int
    signal: str
    value_type: int  # 0 integer, 1 IEEE float, 2 IEEE double
    position: Optional[SourcePosition] = None


@dataclass
class DbcExtendedMultiplex:
    frame_id: int
    signal: str
    selector: str
    ranges: List[Tuple[int, int]]
    position: Optional[SourcePosition] = None


@dataclass
class DbcFile:
    version: str = ''
    nodes: List[str] = field(default_factory=list)
    value_tables: Dict[str, Dict[int, str]] = field(default_factory=dict)
    messages: List[DbcMessage] = field(default_factory=list)
    transmitters: Dict[int, List[str]] = field(default_factory=dict)
    comments: List[DbcComment] = field(default_factory=list)
    attribute_definitions: List[DbcAttributeDefinition] = field(default_factory=list)
    attribute_defaults: Dict[str, AttributeValue] = field(default_factory=dict)
    attributes: List[DbcAttribute] = field(default_factory=list)
    value_descriptions: List[DbcValueDescriptions] = field(default_factory=list)
    signal_value_types: List[DbcSignalValueType] = field(default_factory=list)
    extended_multiplexing: List[DbcExtendedMultiplex] = field(default_factory=list)
    environment_variables: List[str] = field(default_factory=list)


# =============================================================================
# Parser
# =============================================================================

class DBCParser:
    """Parse one DBC token stream into a DbcFile plus diagnostics."""

    def __init__(self, tokens: Iterable[Token]):
        self.stream = TokenStream(tokens)
        self.ast = DbcFile()
        self.diagnostics: List[Diagnostic] = []
        self._handlers = {
            'VERSION': self._parse_version,
            'NS_': self._parse_new_symbols,
            'BS_': self._parse_bit_timing,
            'BU_': self._parse_nodes,
            'VAL_TABLE_': self._parse_value_table,
            'BO_': self._parse_message,
            'BO_TX_BU_': self._parse_transmitters,
            'CM_': self._parse_comment,
            'BA_DEF_': self._parse_attribute_definition,
            'BA_DEF_DEF_': self._parse_attribute_default,
            'BA_': self._parse_attribute,
            'VAL_': self._parse_value_descriptions,
            'SIG_VALTYPE_': self._parse_signal_value_type,
            'SG_MUL_VAL_': self._parse_extended_multiplex,
            'EV_': self._parse_environment_variable,
        }

    def parse(self) -> Tuple[DbcFile, List[Diagnostic]]:
        stream = self.stream
        while not stream.at_eof:
            token = stream.peek()
            if token.kind == TokenKind.IDENT and token.value in IGNORED_KEYWORDS:
                logger.debug('skipping %s section at %s', token.value, token.position)
                stream.skip_past(';')
                continue
            handler = self._handlers.get(token.value) if token.kind == TokenKind.IDENT else None
            if handler is None:
                self._record(ParseError('section keyword', token.describe(), token.position))
                self._recover(force=True)
                continue
            try:
                handler()
            except ParseError as e:
                self._record(e, context=f'{token.value} section at {token.position}')
                self._recover()
        return self.ast, self.diagnostics

    # ------------------------------------------------------------------ helpers

    def _record(self, error: ParseError, context: str = '') -> None:
        self.diagnostics.append(error.to_diagnostic(context))

    def _at_section_start(self, token: Token, previous: Optional[Token]) -> bool:
        starts_line = previous is None or token.line != previous.line
        return starts_line and token.kind == TokenKind.IDENT and \
            (token.value in SECTION_KEYWORDS or token.value in IGNORED_KEYWORDS)

    def _recover(self, stop_at: Tuple[str, ...] = (), force: bool = False) -> None:
        """Skip tokens up to the next section start (or `stop_at` keyword).

        With force=True the current token is always dropped first; callers
        that have not consumed anything yet need that to make progress.
        """
        stream = self.stream
        if force and not stream.at_eof:
            stream.next()
        while not stream.at_eof:
            token = stream.peek()
            if self._at_section_start(token, stream.previous):
                return
            if token.kind == TokenKind.IDENT and token.value in stop_at:
                return
            stream.next()

    def _number(self) -> float:
        return float(self.stream.expect_number())

    def _attribute_value(self) -> AttributeValue:
        token = self.stream.peek()
        if token.kind == TokenKind.STRING:
            return self.stream.next().value
        if token.is_number:
            return self.stream.next().value
        raise ParseError('attribute value', token.describe(), token.position)

    def _value_pairs(self) -> Dict[int, str]:
        values = {}
        stream = self.stream
        while stream.peek().kind == TokenKind.INT:
            key = stream.expect_int()
            values[key] = stream.expect_string()
        stream.expect_punct(';')
        return values

    # ----------------------------------------------------------------- sections

    def _parse_version(self) -> None:
        self.stream.expect_ident('VERSION')
        self.ast.version = self.stream.expect_string()

    def _parse_new_symbols(self) -> None:
        # NS_ lists keywords on indented lines; the list ends at the first
        # token that starts a line at column 1.
        stream = self.stream
        first = stream.next()
        stream.expect_punct(':')
        while not stream.at_eof:
            token = stream.peek()
            if token.line != first.line and token.column == 1:
                break
            stream.next()

    def _parse_bit_timing(self) -> None:
        stream = self.stream
        stream.expect_ident('BS_')
        stream.expect_punct(':')
        if stream.peek().kind == TokenKind.INT:
            stream.expect_int()
            if stream.accept_punct(':'):
                stream.expect_int()
                stream.expect_punct(',')
                stream.expect_int()
        stream.accept_punct(';')

    def _parse_nodes(self) -> None:
        stream = self.stream
        first = stream.next()
        stream.expect_punct(':')
        while stream.peek().kind == TokenKind.IDENT:
            token = stream.peek()
            if token.line != first.line and token.column == 1:
                break
            if token.value in SECTION_KEYWORDS or token.value in IGNORED_KEYWORDS:
                break
            self.ast.nodes.append(stream.next().value)

    def _parse_value_table(self) -> None:
        stream = self.stream
        stream.expect_ident('VAL_TABLE_')
        name = stream.expect_ident()
        self.ast.value_tables[name] = self._value_pairs()

    def _parse_message(self) -> None:
        stream = self.stream
        start = stream.next()
        frame_id = stream.expect_int()
        name = stream.expect_ident()
        stream.expect_punct(':')
        dlc = stream.expect_int()
        transmitter = stream.expect_ident()
        message = DbcMessage(
            frame_id=frame_id,
            name=name,
            dlc=dlc,
            transmitter=None if transmitter == NULL_NODE else transmitter,
            position=start.position,
        )
        self.ast.messages.append(message)

        while stream.peek().is_ident('SG_'):
            sg = stream.peek()
            try:
                message.signals.append(self._parse_signal())
            except ParseError as e:
                self._record(e, context=f'signal in message {name} at {sg.position}')
                self._recover(stop_at=('SG_',))

    def _parse_signal(self) -> DbcSignal:
        stream = self.stream
        start = stream.next()
        name = stream.expect_ident()

        multiplex = None
        if stream.peek().kind == TokenKind.IDENT:
            token = stream.next()
            indicator = token.value
            if not (indicator == 'M' or (indicator.startswith('m') and
                                         indicator[1:].rstrip('M').isdigit())):
                raise ParseError('multiplex indicator', token.describe(), token.position)
            multiplex = indicator

        stream.expect_punct(':')
        start_bit = stream.expect_int()
        stream.expect_punct('|')
        length = stream.expect_int()
        stream.expect_punct('@')

        order = stream.peek()
        byte_order = stream.expect_int()
        if byte_order not in (0, 1):
            raise ParseError('byte order 0 or 1', order.describe(), order.position)
        sign = stream.peek()
        if sign.is_punct('+') or sign.is_punct('-'):
            stream.next()
        else:
            raise ParseError("'+' or '-'", sign.describe(), sign.position)

        stream.expect_punct('(')
        factor = self._number()
        stream.expect_punct(',')
        offset = self._number()
        stream.expect_punct(')')
        stream.expect_punct('[')
        minimum = self._number()
        stream.expect_punct('|')
        maximum = self._number()
        stream.expect_punct(']')
        unit = stream.expect_string()

        receivers = []
        line = stream.previous.line
        while True:
            token = stream.peek()
            if token.kind == TokenKind.IDENT and token.line == line \
                    and token.value not in SECTION_KEYWORDS and token.value != 'SG_':
                receiver = stream.next().value
                if receiver != NULL_NODE:
                    receivers.append(receiver)
            elif token.is_punct(',') and token.line == line:
                stream.next()
            else:
                break

        return DbcSignal(
            name=name,
            start_bit=start_bit,
            length=length,
            little_endian=byte_order == 1,
            signed=sign.value == '-',
            factor=factor,
            offset=offset,
            minimum=minimum,
            maximum=maximum,
            unit=unit,
            receivers=receivers,
            multiplex=multiplex,
            position=start.position,
        )

    def _parse_transmitters(self) -> None:
        stream = self.stream
        stream.expect_ident('BO_TX_BU_')
        frame_id = stream.expect_int()
        stream.expect_punct(':')
        nodes = []
        while not stream.accept_punct(';'):
            if stream.accept_punct(','):
                continue
            nodes.append(stream.expect_ident())
        self.ast.transmitters.setdefault(frame_id, []).extend(nodes)

    def _parse_comment(self) -> None:
        stream = self.stream
        start = stream.next()
        comment = DbcComment(object_type='', text='', position=start.position)
        token = stream.peek()
        if token.kind == TokenKind.IDENT and token.value in OBJECT_KEYWORDS:
            comment.object_type = stream.next().value
            if comment.object_type == 'BO_':
                comment.frame_id = stream.expect_int()
            elif comment.object_type == 'SG_':
                comment.frame_id = stream.expect_int()
                comment.name = stream.expect_ident()
            else:
                comment.name = stream.expect_ident()
        comment.text = stream.expect_string()
        stream.expect_punct(';')
        self.ast.comments.append(comment)

    def _parse_attribute_definition(self) -> None:
        stream = self.stream
        start = stream.next()
        object_type = ''
        if stream.peek().kind == TokenKind.IDENT and stream.peek().value in OBJECT_KEYWORDS:
            object_type = stream.next().value
        name = stream.expect_string()
        type_token = stream.peek()
        value_type = stream.expect_ident()
        definition = DbcAttributeDefinition(object_type, name, value_type,
                                            position=start.position)
        if value_type in ('INT', 'HEX', 'FLOAT'):
            definition.minimum = self._number()
            definition.maximum = self._number()
        elif value_type == 'ENUM':
            while stream.peek().kind == TokenKind.STRING:
                definition.choices.append(stream.next().value)
                stream.accept_punct(',')
        elif value_type not in ('STRING',):
            raise ParseError('attribute type', type_token.describe(), type_token.position)
        stream.expect_punct(';')
        self.ast.attribute_definitions.append(definition)

    def _parse_attribute_default(self) -> None:
        stream = self.stream
        stream.expect_ident('BA_DEF_DEF_')
        name = stream.expect_string()
        self.ast.attribute_defaults[name] = self._attribute_value()
        stream.expect_punct(';')

    def _parse_attribute(self) -> None:
        stream = self.stream
        start = stream.next()
        name = stream.expect_string()
        attribute = DbcAttribute(name=name, value='', position=start.position)
        token = stream.peek()
        if token.kind == TokenKind.IDENT and token.value in OBJECT_KEYWORDS:
            attribute.object_type = stream.next().value
            if attribute.object_type == 'BO_':
                attribute.frame_id = stream.expect_int()
            elif attribute.object_type == 'SG_':
                attribute.frame_id = stream.expect_int()
                attribute.target = stream.expect_ident()
            else:
                attribute.target = stream.expect_ident()
        attribute.value = self._attribute_value()
        stream.expect_punct(';')
        self.ast.attributes.append(attribute)

    def _parse_value_descriptions(self) -> None:
        stream = self.stream
        start = stream.next()
        if stream.peek().kind != TokenKind.INT:
            # Environment variable value descriptions
            stream.expect_ident()
            self._value_pairs()
            return
        frame_id = stream.expect_int()
        signal = stream.expect_ident()
        self.ast.value_descriptions.append(
            DbcValueDescriptions(frame_id, signal, self._value_pairs(), start.position))

    def _parse_signal_value_type(self) -> None:
        stream = self.stream
        start = stream.next()
        frame_id = stream.expect_int()
        signal = stream.expect_ident()
        stream.accept_punct(':')
        value_type = stream.expect_int()
        stream.expect_punct(';')
        self.ast.signal_value_types.append(
            DbcSignalValueType(frame_id, signal, value_type, start.position))

    def _parse_extended_multiplex(self) -> None:
        stream = self.stream
        start = stream.next()
        frame_id = stream.expect_int()
        signal = stream.expect_ident()
        selector = stream.expect_ident()
        ranges = []
        while not stream.accept_punct(';'):
            low = stream.expect_int()
            # "3-5" lexes as 3 followed by the signed literal -5
            token = stream.peek()
            if token.is_punct('-'):
                stream.next()
                high = stream.expect_int()
            elif token.kind == TokenKind.INT and token.text.startswith('-'):
                high = -stream.next().value
            else:
                raise ParseError("'-'", token.describe(), token.position)
            ranges.append((low, high))
            stream.accept_punct(',')
        self.ast.extended_multiplexing.append(
            DbcExtendedMultiplex(frame_id, signal, selector, ranges, start.position))

    def _parse_environment_variable(self) -> None:
        stream = self.stream
        stream.expect_ident('EV_')
        self.ast.environment_variables.append(stream.expect_ident())
        stream.skip_past(';')


def parse_dbc(tokens: Iterable[Token]) -> Tuple[DbcFile, List[Diagnostic]]:
    """Parse DBC tokens into a syntax tree and recoverable diagnostics."""
    return DBCParser(tokens).parse()


def parse_dbc_text(text: str) -> Tuple[DbcFile, List[Diagnostic]]:
    return parse_dbc(tokenize(text, Dialect.DBC))
