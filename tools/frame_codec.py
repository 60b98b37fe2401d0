#!/usr/bin/env python3
"""
frame_codec.py - Encode and decode frames at runtime from codec plans

FrameCodec runs the same CodecPlans the code generator renders, so it is
the reference the generated pack/unpack routines are checked against.

Multiplexing: the selector is packed/unpacked first, and a multiplexed
signal is only touched when the selector carries its activating value.
Values for inactive signals are ignored with a warning.

Usage:
    from frame_codec import FrameCodec

    codec = FrameCodec(network)
    result = codec.encode('EngineData', {'EngineSpeed': 1200.0})
    if result.success:
        print(result.payload.hex())

    decoded = codec.decode(0x100, bytes.fromhex('ff00000000000000'))
    print(decoded.data)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from codec_planner import CodecPlan, NetworkPlan, plan_network
from diagnostics import Diagnostics
from network_ir import Message, Network

logger = logging.getLogger(__name__)

MessageRef = Union[Message, str, int]


@dataclass
class DecodeResult:
    """Result of decoding a frame."""
    data: Dict[str, Any]
    raw: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class EncodeResult:
    """Result of encoding signal values into a frame."""
    payload: bytes
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class FrameCodec:
    """
    Runtime frame encoder/decoder for one Network.

    Messages can be referenced by Message, name or identifier. Messages
    whose plan failed cannot be encoded or decoded.
    """

    def __init__(self, network: Network, network_plan: Optional[NetworkPlan] = None):
        self.network = network
        if network_plan is None:
            network_plan = plan_network(network, Diagnostics())
        self.network_plan = network_plan

    def _resolve(self, ref: MessageRef) -> Optional[Message]:
        if isinstance(ref, Message):
            return ref
        if isinstance(ref, str):
            return self.network.message_by_name(ref)
        return self.network.message_by_id(ref)

    def _plans(self, ref: MessageRef, errors: List[str]) -> Optional[List[CodecPlan]]:
        message = self._resolve(ref)
        if message is None:
            errors.append(f'unknown message {ref!r}')
            return None
        if self.network_plan.is_failed(message.index):
            reasons = '; '.join(e.reason for e in self.network_plan.failed[message.index])
            errors.append(f'message {message.name} has no codec plan: {reasons}')
            return None
        return self.network_plan.plans_for(message.index)

    def encode(self, ref: MessageRef, values: Dict[str, Any]) -> EncodeResult:
        """
        Pack physical signal values into frame bytes.

        Signals missing from `values` get their initial raw value. A value
        that has to be clamped to fit is packed clamped and reported as a
        warning.
        """
        result = EncodeResult(payload=b'')
        plans = self._plans(ref, result.errors)
        if plans is None:
            return result
        message = self._resolve(ref)
        data = bytearray(message.length)
        selector_raw = None

        known = {p.signal for p in plans}
        for name in values:
            if name not in known:
                result.warnings.append(f'{message.name} has no signal {name}')

        for p in plans:
            signal = message.signals[p.signal_index]
            if p.is_multiplexed and selector_raw != p.selector_value:
                if p.signal in values:
                    result.warnings.append(
                        f'{p.signal} ignored: {p.selector_name}={selector_raw}, '
                        f'needs {p.selector_value}')
                continue

            if p.signal in values:
                try:
                    raw_value = p.scaling.to_raw(values[p.signal])
                except (TypeError, ValueError, OverflowError) as e:
                    result.errors.append(f'{p.signal}: {e}')
                    continue
                if raw_value.clamped:
                    result.warnings.append(
                        f'{p.signal}: {values[p.signal]} needs raw {raw_value.requested}, '
                        f'clamped to {raw_value.raw}')
                raw = raw_value.raw
            else:
                raw = p.bits_to_raw(signal.initial_value & ((1 << p.width) - 1))

            try:
                p.encode_raw(data, raw)
            except OverflowError as e:
                result.errors.append(f'{p.signal}: {e}')
                continue
            if p.is_selector:
                selector_raw = raw

        result.payload = bytes(data)
        return result

    def decode(self, ref: MessageRef, payload: bytes) -> DecodeResult:
        """Unpack frame bytes into physical values (plus raw values and labels)."""
        result = DecodeResult(data={})
        plans = self._plans(ref, result.errors)
        if plans is None:
            return result
        message = self._resolve(ref)
        if len(payload) < message.length:
            result.errors.append(
                f'payload of {len(payload)} bytes is shorter than {message.name} '
                f'({message.length} bytes)')
            return result
        if len(payload) > message.length:
            result.warnings.append(f'{len(payload) - message.length} trailing bytes ignored')

        selector_raw = None
        for p in plans:
            if p.is_multiplexed and selector_raw != p.selector_value:
                continue
            raw = p.decode_raw(payload)
            if p.is_selector:
                selector_raw = raw
            result.raw[p.signal] = raw
            result.data[p.signal] = p.scaling.to_physical(raw)
            label = message.signals[p.signal_index].label_for(raw)
            if label is not None:
                result.labels[p.signal] = label
        return result
