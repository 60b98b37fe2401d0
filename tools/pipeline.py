#!/usr/bin/env python3
"""
pipeline.py - text -> tokens -> AST -> Network -> plans -> generated source

convert() runs every stage on one description and returns everything a
caller needs to decide what to do: the Network, all diagnostics in stage
order, the codec plans and the generated sources keyed by target.

Only a lexing failure or an unrecoverable parse failure stops the run
early (network is None). Everything else is collected; whether to write
output despite violations is the caller's decision, except that
abort_on_violation in the config skips planning and generation.

Usage:
    from pipeline import convert

    result = convert(Path('body.dbc').read_text(), 'dbc', targets=['c', 'python'])
    print(result.diagnostics.format('body.dbc'))
    header = result.sources['c']
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from codec_planner import NetworkPlan, plan_network
from converter_config import ConverterConfig
from dbc_parser import parse_dbc
from description_lexer import Dialect, tokenize
from diagnostics import Diagnostics, LexError, ParseError
from generate_network_codec import generate_all
from ldf_parser import parse_ldf
from ncf_parser import parse_ncf
from network_ir import Network
from normalizer import normalize
from validate_network import validate

logger = logging.getLogger(__name__)

PARSERS: Dict[Dialect, Callable[[Iterable], Tuple[Any, list]]] = {
    Dialect.DBC: parse_dbc,
    Dialect.LDF: parse_ldf,
    Dialect.NCF: parse_ncf,
}

EXTENSIONS = {'.dbc': Dialect.DBC, '.ldf': Dialect.LDF, '.ncf': Dialect.NCF}


@dataclass
class ConversionResult:
    """Everything one conversion run produced."""
    network: Optional[Network]
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    network_plan: Optional[NetworkPlan] = None
    sources: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.network is not None and not self.diagnostics.has_errors

    @property
    def fatal(self) -> bool:
        return self.network is None


def detect_format(path: Path, fmt: Optional[str] = None) -> Dialect:
    if fmt:
        return Dialect(fmt.lower())
    try:
        return EXTENSIONS[path.suffix.lower()]
    except KeyError:
        raise ValueError(f'cannot tell the format of {path.name}; pass --format')


def parse_network(text: str, fmt: Union[Dialect, str], diagnostics: Diagnostics,
                  name: str = '') -> Optional[Network]:
    """Lex, parse and normalize; None when the text cannot be parsed at all."""
    dialect = fmt if isinstance(fmt, Dialect) else Dialect(fmt.lower())
    try:
        ast, parse_diagnostics = PARSERS[dialect](tokenize(text, dialect))
    except LexError as e:
        diagnostics.add(e.to_diagnostic())
        return None
    except ParseError as e:
        diagnostics.add(e.to_diagnostic(context='unrecoverable'))
        return None
    diagnostics.extend(parse_diagnostics)
    return normalize(ast, dialect, diagnostics, name)


def load_network(path: Path, fmt: Optional[str] = None) -> Tuple[Optional[Network], Diagnostics]:
    diagnostics = Diagnostics()
    network = parse_network(path.read_text(), detect_format(path, fmt), diagnostics, path.stem)
    return network, diagnostics


def convert(text: str, fmt: Union[Dialect, str], targets: Iterable[str] = ('c',),
            workers: int = 1, config: Optional[ConverterConfig] = None,
            name: str = '', source: str = '') -> ConversionResult:
    config = config or ConverterConfig()
    result = ConversionResult(network=None)
    diagnostics = result.diagnostics

    network = parse_network(text, fmt, diagnostics, name)
    if network is None:
        return result
    result.network = network

    diagnostics.extend(validate(network))
    if config.abort_on_violation and diagnostics.has_errors:
        logger.info('%s: violations found, skipping generation', name or 'input')
        return result

    result.network_plan = plan_network(network, diagnostics, workers)
    result.sources = generate_all(network, result.network_plan, targets, diagnostics,
                                  config.generation_options(source), workers)
    logger.debug('%s: %d diagnostics, targets %s', name or 'input', len(diagnostics),
                 ', '.join(result.sources))
    return result


def convert_file(path: Path, fmt: Optional[str] = None, targets: Iterable[str] = ('c',),
                 workers: int = 1, config: Optional[ConverterConfig] = None) -> ConversionResult:
    return convert(path.read_text(), detect_format(path, fmt), targets, workers, config,
                   name=path.stem, source=path.name)
