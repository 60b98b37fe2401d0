#!/usr/bin/env python3
"""
converter_config.py - Converter settings loaded from YAML

Example autodbconv.yaml:

    targets: [c, python]
    output_dir: generated
    workers: 4
    abort_on_violation: false
    warnings_as_errors: false
    c:
      guard_prefix: VEHICLE_
    module_name: body_can

Every key is optional; CLI flags override whatever the file says.

Usage:
    from converter_config import load_config

    config = load_config('autodbconv.yaml')
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from codegen_targets import TARGETS, GenerationOptions

KNOWN_KEYS = {'targets', 'output_dir', 'workers', 'abort_on_violation', 'warnings_as_errors',
              'c', 'module_name', 'timestamp'}


@dataclass
class ConverterConfig:
    targets: List[str] = field(default_factory=lambda: ['c'])
    output_dir: str = 'generated'
    workers: int = 1
    abort_on_violation: bool = False
    warnings_as_errors: bool = False
    guard_prefix: str = ''
    module_name: str = ''
    timestamp: bool = True

    def generation_options(self, source: str = '') -> GenerationOptions:
        return GenerationOptions(source=source, guard_prefix=self.guard_prefix,
                                 module_name=self.module_name, timestamp=self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def validate_config(data: Any) -> List[str]:
    """Return a list of problems with a raw config mapping (empty when valid)."""
    if data is None:
        return []
    if not isinstance(data, dict):
        return [f'config must be a mapping, got {type(data).__name__}']

    errors = []
    for key in data:
        if key not in KNOWN_KEYS:
            errors.append(f'unknown key {key!r}')

    targets = data.get('targets', ['c'])
    if isinstance(targets, str):
        targets = [targets]
    if not isinstance(targets, list):
        errors.append('targets must be a list')
    else:
        for target in targets:
            if target not in TARGETS:
                errors.append(f'unknown target {target!r} (known: {", ".join(TARGETS)})')

    workers = data.get('workers', 1)
    if not isinstance(workers, int) or isinstance(workers, bool) or workers < 1:
        errors.append(f'workers must be a positive integer, got {workers!r}')

    for flag in ('abort_on_violation', 'warnings_as_errors', 'timestamp'):
        if flag in data and not isinstance(data[flag], bool):
            errors.append(f'{flag} must be true or false')

    c_options = data.get('c', {})
    if not isinstance(c_options, dict):
        errors.append('c must be a mapping')
    elif 'guard_prefix' in c_options and not isinstance(c_options['guard_prefix'], str):
        errors.append('c.guard_prefix must be a string')

    for key in ('output_dir', 'module_name'):
        if key in data and not isinstance(data[key], str):
            errors.append(f'{key} must be a string')
    return errors


def config_from_dict(data: Dict[str, Any]) -> ConverterConfig:
    errors = validate_config(data)
    if errors:
        raise ValueError('invalid config: ' + '; '.join(errors))
    data = data or {}
    targets = data.get('targets', ['c'])
    return ConverterConfig(
        targets=[targets] if isinstance(targets, str) else list(targets),
        output_dir=data.get('output_dir', 'generated'),
        workers=data.get('workers', 1),
        abort_on_violation=data.get('abort_on_violation', False),
        warnings_as_errors=data.get('warnings_as_errors', False),
        guard_prefix=data.get('c', {}).get('guard_prefix', ''),
        module_name=data.get('module_name', ''),
        timestamp=data.get('timestamp', True),
    )


def load_config(path: Union[str, Path]) -> ConverterConfig:
    """Load and validate a YAML config file; raises ValueError when invalid."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return config_from_dict(data)
