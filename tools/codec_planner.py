#!/usr/bin/env python3
"""
codec_planner.py - Bit-level pack/unpack plans for network signals

A CodecPlan says, for one signal, which bits of which bytes hold it and how
raw values map to physical ones. Both code generation and the runtime
FrameCodec execute plans; neither does any bit arithmetic of its own
beyond what a plan describes.

Bit numbering
-------------
Both formats number bits within a byte LSB = 0, and byte n covers bits
8n .. 8n+7.

  little-endian (DBC @1, every LIN signal)
      start bit is the signal's least significant bit; higher bits continue
      upwards through the byte and into the next byte.

  big-endian (DBC @0, "Motorola")
      start bit is the signal's most significant bit; lower bits continue
      downwards through the byte and then from bit 7 of the next byte
      (the DBC "sawtooth").

Either way the plan stores spans MSB-first: the first span holds the
signal's top bits, the last span its bit 0.

    BO_ 256 Example: 8 ECU
     SG_ Speed : 7|12@0+ ...     ->  (byte 0, bits 0..7), (byte 1, bits 4..7)
     SG_ Level : 12|12@1+ ...    ->  (byte 2, bits 0..7), (byte 1, bits 4..7)

Scaling
-------
physical = raw * scale + offset and raw = round((physical - offset) / scale),
rounding half away from zero. A raw value outside the width's domain is
clamped, and the result says so; callers decide whether that is a warning.

Usage:
    from codec_planner import plan, plan_network

    p = plan(signal, message)
    raw = p.scaling.to_raw(25.5)       # RawValue(raw=255, clamped=False, ...)
"""

import logging
import math
import struct
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from diagnostics import Diagnostics, PlanError
from network_ir import ByteOrder, Message, Network, Signal, ValueKind

logger = logging.getLogger(__name__)

MAX_WIDTH = 64
FLOAT_WIDTHS = {32: ('>f', '>I'), 64: ('>d', '>Q')}
FLOAT_LIMITS = {32: 3.4028234663852886e38, 64: sys.float_info.max}

Number = Union[int, float]


@dataclass(frozen=True)
class BitSpan:
    byte: int
    bit_offset: int  # position of the span's lowest bit within the byte
    bit_count: int

    @property
    def mask(self) -> int:
        return (1 << self.bit_count) - 1


def signal_spans(start_bit: int, width: int, byte_order: ByteOrder) -> List[BitSpan]:
    """Spans covering a signal, most significant first."""
    spans = []
    remaining = width
    if byte_order == ByteOrder.LITTLE_ENDIAN:
        pos = start_bit
        while remaining > 0:
            offset = pos % 8
            count = min(8 - offset, remaining)
            spans.append(BitSpan(pos // 8, offset, count))
            pos += count
            remaining -= count
        spans.reverse()
    else:
        byte, bit = divmod(start_bit, 8)
        while remaining > 0:
            count = min(bit + 1, remaining)
            spans.append(BitSpan(byte, bit + 1 - count, count))
            remaining -= count
            byte += 1
            bit = 7
    return spans


def occupied_bits(start_bit: int, width: int, byte_order: ByteOrder) -> FrozenSet[int]:
    """Absolute bit positions (byte * 8 + bit) a signal covers."""
    return frozenset(
        span.byte * 8 + span.bit_offset + i
        for span in signal_spans(start_bit, width, byte_order)
        for i in range(span.bit_count))


def round_half_away(value: float) -> int:
    """round() that sends .5 away from zero (Python's round() goes to even)."""
    rounded = math.floor(abs(value) + 0.5)
    return int(-rounded if value < 0 else rounded)


@dataclass(frozen=True)
class RawValue:
    raw: Number
    clamped: bool = False
    requested: Number = 0


@dataclass(frozen=True)
class Scaling:
    scale: float = 1.0
    offset: float = 0.0
    raw_min: Number = 0
    raw_max: Number = 0
    is_float: bool = False

    @property
    def is_identity(self) -> bool:
        return self.scale == 1 and self.offset == 0

    def to_physical(self, raw: Number) -> Number:
        if self.is_identity:
            return raw
        return raw * self.scale + self.offset

    def to_raw(self, physical: Number) -> RawValue:
        """Physical value to raw; raises ValueError for NaN/inf on integer signals.

        Finite float values beyond the float width's range are clamped to
        its largest magnitude; NaN and inf pass through unchanged.
        """
        value = (physical - self.offset) / self.scale
        if self.is_float:
            if not math.isfinite(value):
                return RawValue(value, False, value)
            raw = min(max(value, self.raw_min), self.raw_max)
            return RawValue(raw, raw != value, value)
        if not math.isfinite(value):
            raise ValueError(f'cannot encode non-finite value {physical!r}')
        requested = round_half_away(value)
        raw = min(max(requested, self.raw_min), self.raw_max)
        return RawValue(raw, raw != requested, requested)


def raw_domain(width: int, kind: ValueKind) -> Tuple[Number, Number]:
    if kind == ValueKind.SIGNED:
        return -(1 << (width - 1)), (1 << (width - 1)) - 1
    if kind == ValueKind.FLOAT:
        limit = FLOAT_LIMITS.get(width, math.inf)
        return -limit, limit
    return 0, (1 << width) - 1


@dataclass(frozen=True)
class CodecPlan:
    """How to pack and unpack one signal of one message."""
    message: str
    signal: str
    signal_index: int
    width: int
    byte_order: ByteOrder
    kind: ValueKind
    spans: Tuple[BitSpan, ...]
    scaling: Scaling
    is_selector: bool = False
    selector_index: Optional[int] = None
    selector_name: Optional[str] = None
    selector_value: Optional[int] = None

    @property
    def is_multiplexed(self) -> bool:
        return self.selector_value is not None

    @property
    def is_signed(self) -> bool:
        return self.kind == ValueKind.SIGNED

    @property
    def is_float(self) -> bool:
        return self.kind == ValueKind.FLOAT

    def shifts(self) -> List[Tuple[BitSpan, int]]:
        """Each span with the position of its lowest bit in the signal value."""
        result = []
        shift = self.width
        for span in self.spans:
            shift -= span.bit_count
            result.append((span, shift))
        return result

    def extract(self, data: bytes) -> int:
        bits = 0
        for span in self.spans:
            bits = (bits << span.bit_count) | ((data[span.byte] >> span.bit_offset) & span.mask)
        return bits

    def insert(self, data: bytearray, bits: int) -> None:
        for span, shift in self.shifts():
            chunk = (bits >> shift) & span.mask
            data[span.byte] &= ~(span.mask << span.bit_offset) & 0xFF
            data[span.byte] |= chunk << span.bit_offset

    def bits_to_raw(self, bits: int) -> Number:
        if self.is_float:
            value_fmt, bits_fmt = FLOAT_WIDTHS[self.width]
            return struct.unpack(value_fmt, struct.pack(bits_fmt, bits))[0]
        if self.is_signed and bits & (1 << (self.width - 1)):
            return bits - (1 << self.width)
        return bits

    def raw_to_bits(self, raw: Number) -> int:
        if self.is_float:
            value_fmt, bits_fmt = FLOAT_WIDTHS[self.width]
            return struct.unpack(bits_fmt, struct.pack(value_fmt, raw))[0]
        return int(raw) & ((1 << self.width) - 1)

    def decode_raw(self, data: bytes) -> Number:
        return self.bits_to_raw(self.extract(data))

    def encode_raw(self, data: bytearray, raw: Number) -> None:
        self.insert(data, self.raw_to_bits(raw))


def plan(signal: Signal, message: Message, signal_index: Optional[int] = None) -> CodecPlan:
    """Compute the codec plan for one signal; raises PlanError when none exists."""
    def fail(reason: str) -> PlanError:
        return PlanError(reason, signal.name, message.name)

    if signal.width < 1 or signal.width > MAX_WIDTH:
        raise fail(f'width {signal.width} outside 1..{MAX_WIDTH}')
    if signal.kind == ValueKind.FLOAT and signal.width not in FLOAT_WIDTHS:
        raise fail(f'float signal width must be 32 or 64, not {signal.width}')
    if signal.byte_order is None:
        raise fail('byte order unspecified')
    if signal.scale == 0:
        raise fail('scale factor is zero')

    spans = signal_spans(signal.start_bit, signal.width, signal.byte_order)
    for span in spans:
        if span.byte >= message.length:
            raise fail(f'bits extend to byte {span.byte}, message is {message.length} bytes')

    selector_index = selector_name = selector_value = None
    if signal.is_multiplexed:
        selector = message.selector
        if selector is None:
            raise fail('multiplexed signal without a unique multiplexor')
        selector_index = message.signal_index(selector.name)
        selector_name = selector.name
        selector_value = signal.mux_value

    raw_min, raw_max = raw_domain(signal.width, signal.kind)
    if signal_index is None:
        signal_index = message.signal_index(signal.name)
    return CodecPlan(
        message=message.name,
        signal=signal.name,
        signal_index=signal_index,
        width=signal.width,
        byte_order=signal.byte_order,
        kind=signal.kind,
        spans=tuple(spans),
        scaling=Scaling(signal.scale, signal.offset, raw_min, raw_max,
                        signal.kind == ValueKind.FLOAT),
        is_selector=signal.is_multiplexor,
        selector_index=selector_index,
        selector_name=selector_name,
        selector_value=selector_value,
    )


@dataclass
class NetworkPlan:
    """Plans for every message, keyed by message index."""
    plans: Dict[int, List[CodecPlan]] = field(default_factory=dict)
    failed: Dict[int, List[PlanError]] = field(default_factory=dict)

    def is_failed(self, message_index: int) -> bool:
        return message_index in self.failed

    def plans_for(self, message_index: int) -> List[CodecPlan]:
        """Plans in pack order: the selector first, then the rest as declared."""
        plans = self.plans.get(message_index, [])
        return sorted(plans, key=lambda p: (not p.is_selector, p.signal_index))


def _plan_message(message: Message) -> Tuple[List[CodecPlan], List[PlanError]]:
    plans, errors = [], []
    for i, signal in enumerate(message.signals):
        try:
            plans.append(plan(signal, message, i))
        except PlanError as e:
            errors.append(e)
    return plans, errors


def plan_network(network: Network, diagnostics: Diagnostics, workers: int = 1) -> NetworkPlan:
    """Plan every message. A message with any failing signal is marked failed."""
    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(_plan_message, network.messages))
    else:
        results = [_plan_message(m) for m in network.messages]

    network_plan = NetworkPlan()
    for message, (plans, errors) in zip(network.messages, results):
        if errors:
            network_plan.failed[message.index] = errors
            for error in errors:
                diagnostics.add(error.to_diagnostic())
            logger.debug('message %s not planned: %s', message.name,
                         '; '.join(e.reason for e in errors))
        else:
            network_plan.plans[message.index] = plans
    return network_plan
