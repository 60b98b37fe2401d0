"""
test_codec_planner.py - Bit spans, scaling and plan failures

Run with:
    pytest tests/test_codec_planner.py -v
"""

import math
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
from codec_planner import (
    BitSpan, Scaling, occupied_bits, plan, plan_network, raw_domain, round_half_away,
    signal_spans,
)
from diagnostics import Diagnostics, PlanError, Stage
from network_ir import BusType, ByteOrder, Message, MuxRole, Network, Signal, ValueKind

LE = ByteOrder.LITTLE_ENDIAN
BE = ByteOrder.BIG_ENDIAN


def message_with(*signals, length=8):
    return Message(0, 'Msg', 0x100, length, signals=tuple(signals))


class TestSpans:
    """Span computation for both byte orders."""

    def test_little_endian_byte_aligned(self):
        assert signal_spans(0, 16, LE) == [BitSpan(1, 0, 8), BitSpan(0, 0, 8)]

    def test_little_endian_unaligned(self):
        # start bit 12: byte 1 bits 4-7 hold the low nibble, byte 2 the rest
        assert signal_spans(12, 12, LE) == [BitSpan(2, 0, 8), BitSpan(1, 4, 4)]

    def test_little_endian_within_byte(self):
        assert signal_spans(36, 3, LE) == [BitSpan(4, 4, 3)]

    def test_big_endian_byte_aligned(self):
        assert signal_spans(7, 16, BE) == [BitSpan(0, 0, 8), BitSpan(1, 0, 8)]

    def test_big_endian_sawtooth(self):
        # MSB at byte 0 bit 3, then all of byte 1, then bits 7-6 of byte 2
        assert signal_spans(3, 14, BE) == [BitSpan(0, 0, 4), BitSpan(1, 0, 8),
                                           BitSpan(2, 6, 2)]

    def test_big_endian_single_bit(self):
        assert signal_spans(23, 1, BE) == [BitSpan(2, 7, 1)]

    def test_occupied_bits(self):
        assert occupied_bits(12, 8, LE) == frozenset(range(12, 20))
        assert occupied_bits(7, 12, BE) == frozenset(range(0, 8)) | frozenset(range(12, 16))

    def test_span_mask(self):
        assert BitSpan(0, 3, 5).mask == 0x1F


class TestScaling:
    """Affine transform, rounding and clamping."""

    @pytest.mark.parametrize('value,expected', [
        (0.5, 1), (1.5, 2), (2.5, 3), (-0.5, -1), (-2.5, -3), (2.4999, 2), (-2.4999, -2),
    ])
    def test_round_half_away(self, value, expected):
        assert round_half_away(value) == expected

    def test_domains(self):
        assert raw_domain(8, ValueKind.UNSIGNED) == (0, 255)
        assert raw_domain(12, ValueKind.SIGNED) == (-2048, 2047)
        assert raw_domain(64, ValueKind.UNSIGNED) == (0, 2 ** 64 - 1)
        assert raw_domain(32, ValueKind.FLOAT) == (-3.4028234663852886e38, 3.4028234663852886e38)
        low, high = raw_domain(64, ValueKind.FLOAT)
        assert math.isfinite(high) and low == -high

    def test_to_raw(self):
        scaling = Scaling(0.1, 0.0, 0, 65535)
        result = scaling.to_raw(25.5)
        assert (result.raw, result.clamped) == (255, False)
        assert scaling.to_physical(255) == pytest.approx(25.5)

    def test_offset(self):
        scaling = Scaling(1.0, -40.0, 0, 255)
        assert scaling.to_raw(-40).raw == 0
        assert scaling.to_physical(100) == 60.0

    def test_clamping_is_reported(self):
        scaling = Scaling(1.0, 0.0, 0, 255)
        high = scaling.to_raw(300)
        assert (high.raw, high.clamped, high.requested) == (255, True, 300)
        low = scaling.to_raw(-1)
        assert (low.raw, low.clamped) == (0, True)

    def test_identity_returns_raw_unchanged(self):
        scaling = Scaling(1, 0, 0, 255)
        assert scaling.is_identity
        assert scaling.to_physical(7) == 7
        assert isinstance(scaling.to_physical(7), int)

    def test_non_finite_integer_value(self):
        with pytest.raises(ValueError):
            Scaling(1.0, 0.0, 0, 255).to_raw(float('nan'))

    def test_float_signal_not_rounded(self):
        scaling = Scaling(1.0, 0.0, -math.inf, math.inf, is_float=True)
        assert scaling.to_raw(1.25).raw == 1.25

    def test_float32_clamped_to_largest_magnitude(self):
        low, high = raw_domain(32, ValueKind.FLOAT)
        scaling = Scaling(1.0, 0.0, low, high, is_float=True)
        result = scaling.to_raw(1e40)
        assert (result.raw, result.clamped, result.requested) == (high, True, 1e40)
        assert scaling.to_raw(-1e40).raw == low
        assert not scaling.to_raw(math.inf).clamped


class TestPlan:
    """plan() results and failures."""

    def test_scenario_scaled_little_endian(self):
        signal = Signal('Speed', 0, 16, LE, scale=0.1)
        p = plan(signal, message_with(signal))
        data = bytearray(8)
        p.encode_raw(data, p.scaling.to_raw(25.5).raw)
        assert bytes(data) == bytes([0xFF, 0x00, 0, 0, 0, 0, 0, 0])
        assert p.scaling.to_physical(p.decode_raw(bytes(data))) == pytest.approx(25.5)

    def test_big_endian_pack(self):
        signal = Signal('Pressure', 7, 16, BE)
        p = plan(signal, message_with(signal, length=4))
        data = bytearray(4)
        p.encode_raw(data, 0x1234)
        assert bytes(data) == bytes([0x12, 0x34, 0, 0])
        assert p.decode_raw(bytes(data)) == 0x1234

    def test_signed_extraction(self):
        signal = Signal('Torque', 24, 12, LE, kind=ValueKind.SIGNED)
        p = plan(signal, message_with(signal))
        data = bytearray(8)
        p.encode_raw(data, -1)
        assert data[3] == 0xFF and data[4] == 0x0F
        assert p.decode_raw(bytes(data)) == -1

    def test_insert_preserves_neighbours(self):
        signal = Signal('Nibble', 4, 4, LE)
        p = plan(signal, message_with(signal, length=1))
        data = bytearray([0xFF])
        p.encode_raw(data, 0)
        assert data[0] == 0x0F

    def test_float32(self):
        signal = Signal('Temp', 0, 32, LE, kind=ValueKind.FLOAT)
        p = plan(signal, message_with(signal))
        data = bytearray(8)
        p.encode_raw(data, 1.5)
        assert bytes(data[:4]) == bytes([0x00, 0x00, 0xC0, 0x3F])
        assert p.decode_raw(bytes(data)) == 1.5

    def test_shifts_cover_width(self):
        signal = Signal('S', 3, 14, BE)
        p = plan(signal, message_with(signal))
        assert [shift for _, shift in p.shifts()] == [10, 2, 0]

    def test_multiplexed_plan_records_selector(self):
        selector = Signal('Mode', 0, 8, LE, mux_role=MuxRole.SELECTOR)
        muxed = Signal('Value', 8, 8, LE, mux_role=MuxRole.MULTIPLEXED, mux_value=3)
        message = message_with(selector, muxed)
        p = plan(muxed, message)
        assert (p.selector_index, p.selector_name, p.selector_value) == (0, 'Mode', 3)
        assert p.is_multiplexed
        assert plan(selector, message).is_selector

    @pytest.mark.parametrize('signal,reason', [
        (Signal('S', 0, 65, LE), 'width 65'),
        (Signal('S', 0, 0, LE), 'width 0'),
        (Signal('S', 0, 16, LE, kind=ValueKind.FLOAT), 'float'),
        (Signal('S', 0, 8, None), 'byte order'),
        (Signal('S', 0, 8, LE, scale=0.0), 'scale'),
        (Signal('S', 60, 8, LE), 'byte 8'),
    ])
    def test_plan_errors(self, signal, reason):
        with pytest.raises(PlanError) as exc:
            plan(signal, message_with(signal))
        assert reason in exc.value.reason
        assert exc.value.signal == 'S'
        assert exc.value.message_name == 'Msg'

    def test_multiplexed_without_unique_selector(self):
        muxed = Signal('Value', 8, 8, LE, mux_role=MuxRole.MULTIPLEXED, mux_value=1)
        with pytest.raises(PlanError, match='multiplexor'):
            plan(muxed, message_with(muxed))


class TestPlanNetwork:
    """Whole-network planning."""

    def _network(self):
        good = Message(0, 'Good', 1, 2, signals=(Signal('A', 0, 8, LE), Signal('B', 8, 8, LE)))
        bad = Message(1, 'Bad', 2, 8, signals=(Signal('Ok', 0, 8, LE),
                                               Signal('Huge', 8, 72, LE)))
        return Network('n', BusType.CAN, messages=(good, bad))

    def test_failed_message_is_skipped_and_reported(self):
        diagnostics = Diagnostics()
        network_plan = plan_network(self._network(), diagnostics)
        assert [p.signal for p in network_plan.plans_for(0)] == ['A', 'B']
        assert network_plan.is_failed(1)
        assert 1 not in network_plan.plans
        assert [d.stage for d in diagnostics] == [Stage.PLAN]
        assert diagnostics.items[0].context == 'Bad.Huge'

    def test_workers_give_same_result(self):
        network = self._network()
        serial = plan_network(network, Diagnostics())
        parallel = plan_network(network, Diagnostics(), workers=4)
        assert serial.plans == parallel.plans
        assert list(serial.failed) == list(parallel.failed)

    def test_selector_planned_first(self, body_network):
        network_plan = plan_network(body_network, Diagnostics())
        diag = body_network.message_by_name('Diagnostics')
        order = [p.signal for p in network_plan.plans_for(diag.index)]
        assert order[0] == 'Mode'

    def test_selector_first_even_when_declared_last(self):
        message = Message(0, 'M', 1, 8, signals=(
            Signal('Value', 8, 8, LE, mux_role=MuxRole.MULTIPLEXED, mux_value=1),
            Signal('Mode', 0, 8, LE, mux_role=MuxRole.SELECTOR)))
        network_plan = plan_network(Network('n', BusType.CAN, messages=(message,)), Diagnostics())
        assert [p.signal for p in network_plan.plans_for(0)] == ['Mode', 'Value']
