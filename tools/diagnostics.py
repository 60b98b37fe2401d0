#!/usr/bin/env python3
"""
diagnostics.py - Error taxonomy and diagnostic collection

Every conversion stage reports problems in one of two ways:

  * Raises an exception when it cannot continue at all
    (LexError, ParseError for structural breaks, PlanError for one signal,
    GenerationError for one target).
  * Appends a Diagnostic to an explicit Diagnostics collector and carries on.

The collector is a plain value handed from stage to stage; nothing here is
global. Callers merge collectors and decide what to do with the result.

Usage:
    from diagnostics import Diagnostics, Stage, reference_error

    diags = Diagnostics()
    diags.add(reference_error('node', 'ECU9', context='message Foo sender'))
    if diags.has_errors:
        print(diags.format())
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional


class Stage(Enum):
    LEX = 'lex'
    PARSE = 'parse'
    REFERENCE = 'reference'
    VALIDATION = 'validation'
    PLAN = 'plan'
    GENERATION = 'generation'


class Severity(Enum):
    ERROR = 'error'
    WARNING = 'warning'


@dataclass(frozen=True)
class SourcePosition:
    """1-based line/column in the input text."""
    line: int
    column: int

    def __str__(self) -> str:
        return f'{self.line}:{self.column}'


@dataclass(frozen=True)
class Diagnostic:
    """A single reported problem."""
    stage: Stage
    message: str
    code: str = ''
    severity: Severity = Severity.ERROR
    position: Optional[SourcePosition] = None
    context: str = ''

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def format(self, source: str = '') -> str:
        where = source
        if self.position is not None:
            where = f'{where}:{self.position}' if where else str(self.position)
        prefix = f'{where}: ' if where else ''
        code = f' [{self.code}]' if self.code else ''
        ctx = f' ({self.context})' if self.context else ''
        return f'{prefix}{self.severity.value}: {self.stage.value}{code}: {self.message}{ctx}'

    def to_dict(self) -> dict:
        return {
            'stage': self.stage.value,
            'severity': self.severity.value,
            'code': self.code,
            'message': self.message,
            'line': self.position.line if self.position else None,
            'column': self.position.column if self.position else None,
            'context': self.context,
        }


@dataclass
class Diagnostics:
    """Ordered, append-only collection of diagnostics."""
    items: List[Diagnostic] = field(default_factory=list)

    def add(self, diagnostic: Diagnostic) -> None:
        self.items.append(diagnostic)

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        self.items.extend(diagnostics)

    def warn(self, stage: Stage, message: str, code: str = '',
             position: Optional[SourcePosition] = None, context: str = '') -> None:
        self.add(Diagnostic(stage, message, code, Severity.WARNING, position, context))

    def error(self, stage: Stage, message: str, code: str = '',
              position: Optional[SourcePosition] = None, context: str = '') -> None:
        self.add(Diagnostic(stage, message, code, Severity.ERROR, position, context))

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.items if d.is_error]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.items if not d.is_error]

    @property
    def has_errors(self) -> bool:
        return any(d.is_error for d in self.items)

    def by_stage(self, stage: Stage) -> List[Diagnostic]:
        return [d for d in self.items if d.stage == stage]

    def by_code(self, code: str) -> List[Diagnostic]:
        return [d for d in self.items if d.code == code]

    def format(self, source: str = '') -> str:
        return '\n'.join(d.format(source) for d in self.items)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LexError(ValueError):
    """Input text cannot be tokenized."""

    def __init__(self, message: str, line: int, column: int):
        super().__init__(f'{message} at {line}:{column}')
        self.reason = message
        self.position = SourcePosition(line, column)

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(Stage.LEX, self.reason, 'lex-error', position=self.position)


class ParseError(ValueError):
    """Token stream does not match the grammar."""

    def __init__(self, expected: str, found: str, position: Optional[SourcePosition] = None):
        where = f' at {position}' if position else ''
        super().__init__(f'expected {expected}, found {found}{where}')
        self.expected = expected
        self.found = found
        self.position = position

    def to_diagnostic(self, context: str = '') -> Diagnostic:
        return Diagnostic(Stage.PARSE, f'expected {self.expected}, found {self.found}',
                          'parse-error', position=self.position, context=context)


class PlanError(ValueError):
    """A signal has no valid bit-packing plan."""

    def __init__(self, reason: str, signal: str = '', message_name: str = ''):
        super().__init__(reason)
        self.reason = reason
        self.signal = signal
        self.message_name = message_name

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(Stage.PLAN, self.reason, 'plan-error',
                          context=f'{self.message_name}.{self.signal}')


class GenerationError(ValueError):
    """A target cannot represent something the network requires."""

    def __init__(self, reason: str, target: str = ''):
        super().__init__(reason)
        self.reason = reason
        self.target = target

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(Stage.GENERATION, self.reason, 'generation-error',
                          context=f'target {self.target}')


# ---------------------------------------------------------------------------
# Collected diagnostic constructors
# ---------------------------------------------------------------------------

def reference_error(kind: str, name: str, context: str = '',
                    position: Optional[SourcePosition] = None) -> Diagnostic:
    """An unresolved cross-reference (node, message, signal, encoding, ...)."""
    return Diagnostic(Stage.REFERENCE, f'unresolved {kind} reference {name!r}',
                      'unresolved-reference', position=position, context=context)


def violation(code: str, message: str, context: str = '',
              severity: Severity = Severity.ERROR) -> Diagnostic:
    """A semantic invariant breach found by the validator."""
    return Diagnostic(Stage.VALIDATION, message, code, severity, context=context)
