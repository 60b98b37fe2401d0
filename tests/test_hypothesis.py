"""
test_hypothesis.py - Property-based testing with Hypothesis

Checks the bit-level and scaling invariants over generated signals rather
than hand-picked examples, and that the lexer, parsers and runtime codec
fail only in the documented ways on arbitrary input.

Properties:
- Spans of a signal cover exactly `width` bits, all inside the message
- Packing a raw value and unpacking it gives the value back, and leaves
  every bit outside the signal untouched
- physical -> raw -> physical stays within half a scale step
- Only the multiplexed group selected by the multiplexor is decoded
- Arbitrary text raises LexError/ParseError or parses; nothing else

Run with:
    pytest tests/test_hypothesis.py -v
    pytest tests/test_hypothesis.py -v --hypothesis-show-statistics
"""

import pytest
from hypothesis import given, settings, assume, HealthCheck
from hypothesis import strategies as st
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
from codec_planner import Scaling, occupied_bits, plan, raw_domain, signal_spans
from dbc_parser import parse_dbc_text
from description_lexer import Dialect, tokenize
from diagnostics import LexError, ParseError
from frame_codec import FrameCodec
from ldf_parser import parse_ldf_text
from network_ir import ByteOrder, Message, Signal, ValueKind


# =============================================================================
# Strategies for generating test data
# =============================================================================

byte_orders = st.sampled_from([ByteOrder.LITTLE_ENDIAN, ByteOrder.BIG_ENDIAN])
int_kinds = st.sampled_from([ValueKind.UNSIGNED, ValueKind.SIGNED])
payload_8 = st.binary(min_size=8, max_size=8)


@st.composite
def fitting_signals(draw, length=8):
    """A signal whose bits all lie inside a `length`-byte message."""
    byte_order = draw(byte_orders)
    kind = draw(int_kinds)
    start = draw(st.integers(min_value=0, max_value=length * 8 - 1))
    width = draw(st.integers(min_value=1, max_value=64))
    spans = signal_spans(start, width, byte_order)
    assume(all(span.byte < length for span in spans))
    return Signal('S', start, width, byte_order, kind=kind)


scales = st.one_of(
    st.floats(min_value=0.001, max_value=100, allow_nan=False, allow_infinity=False),
    st.floats(min_value=-100, max_value=-0.001, allow_nan=False, allow_infinity=False),
)
offsets = st.floats(min_value=-1000, max_value=1000, allow_nan=False, allow_infinity=False)


# =============================================================================
# Spans
# =============================================================================

class TestSpans:
    """Span computation covers exactly the signal's bits."""

    @given(fitting_signals())
    @settings(max_examples=500, suppress_health_check=[HealthCheck.filter_too_much])
    def test_width_covered(self, signal):
        spans = signal_spans(signal.start_bit, signal.width, signal.byte_order)
        assert sum(span.bit_count for span in spans) == signal.width
        assert len(occupied_bits(signal.start_bit, signal.width, signal.byte_order)) == \
            signal.width
        for span in spans:
            assert 0 <= span.bit_offset and span.bit_offset + span.bit_count <= 8

    @given(st.integers(min_value=0, max_value=63), st.integers(min_value=1, max_value=64))
    def test_little_endian_is_contiguous(self, start, width):
        bits = occupied_bits(start, width, ByteOrder.LITTLE_ENDIAN)
        assert bits == frozenset(range(start, start + width))


# =============================================================================
# Raw pack/unpack
# =============================================================================

class TestRawRoundtrip:
    """Raw values survive packing and neighbours are preserved."""

    @given(fitting_signals(), st.data())
    @settings(max_examples=500, suppress_health_check=[HealthCheck.filter_too_much])
    def test_roundtrip(self, signal, data):
        p = plan(signal, Message(0, 'M', 1, 8, signals=(signal,)))
        low, high = raw_domain(signal.width, signal.kind)
        raw = data.draw(st.integers(min_value=low, max_value=high))
        buffer = bytearray(8)
        p.encode_raw(buffer, raw)
        assert p.decode_raw(bytes(buffer)) == raw

    @given(fitting_signals(), payload_8, st.data())
    @settings(max_examples=500, suppress_health_check=[HealthCheck.filter_too_much])
    def test_other_bits_untouched(self, signal, background, data):
        p = plan(signal, Message(0, 'M', 1, 8, signals=(signal,)))
        low, high = raw_domain(signal.width, signal.kind)
        buffer = bytearray(background)
        p.encode_raw(buffer, data.draw(st.integers(min_value=low, max_value=high)))
        covered = occupied_bits(signal.start_bit, signal.width, signal.byte_order)
        for bit in range(64):
            if bit not in covered:
                assert (buffer[bit // 8] >> (bit % 8)) & 1 == (background[bit // 8] >> (bit % 8)) & 1


# =============================================================================
# Scaling
# =============================================================================

class TestScaling:
    """physical -> raw -> physical error is bounded by half a step."""

    @given(scales, offsets, st.integers(min_value=1, max_value=32), st.data())
    @settings(max_examples=500)
    def test_within_half_step(self, scale, offset, width, data):
        raw_min, raw_max = raw_domain(width, ValueKind.UNSIGNED)
        scaling = Scaling(scale, offset, raw_min, raw_max)
        steps = data.draw(st.floats(min_value=0, max_value=raw_max,
                                    allow_nan=False, allow_infinity=False))
        physical = offset + steps * scale
        result = scaling.to_raw(physical)
        assert not result.clamped
        error = abs(scaling.to_physical(result.raw) - physical)
        assert error <= abs(scale) / 2 + 1e-9 * max(1.0, abs(physical))

    @given(scales, offsets, st.integers(min_value=1, max_value=16),
           st.floats(min_value=-1e9, max_value=1e9, allow_nan=False, allow_infinity=False))
    @settings(max_examples=500)
    def test_result_in_domain(self, scale, offset, width, physical):
        raw_min, raw_max = raw_domain(width, ValueKind.SIGNED)
        result = Scaling(scale, offset, raw_min, raw_max).to_raw(physical)
        assert raw_min <= result.raw <= raw_max
        assert result.clamped == (result.raw != result.requested)


# =============================================================================
# Multiplexing
# =============================================================================

class TestMultiplexing:
    """Only the group selected by the multiplexor is decoded."""

    GROUPS = {1: {'Mode', 'Voltage'}, 2: {'Mode', 'Current', 'Temperature'}}

    @given(payload_8)
    @settings(max_examples=300)
    def test_exclusive_groups(self, body_network, payload):
        result = FrameCodec(body_network).decode('Diagnostics', payload)
        assert result.success
        assert set(result.data) == self.GROUPS.get(payload[0], {'Mode'})

    @given(st.sampled_from([0, 1, 2, 3]), st.integers(min_value=0, max_value=65535))
    def test_inactive_signals_not_packed(self, body_network, mode, raw):
        codec = FrameCodec(body_network)
        result = codec.encode('Diagnostics', {'Mode': mode, 'Voltage': raw * 0.001})
        if mode == 1:
            assert result.warnings == []
        else:
            assert result.payload[1:] == bytes(7)


# =============================================================================
# Parser safety
# =============================================================================

dbc_alphabet = st.sampled_from(list('BO_SG: ;|@()[],+-"0123456789abcxyz\n\t') +
                               ['BO_ ', 'SG_ ', 'BU_: ', 'VAL_ ', 'CM_ ', '1.5', '"txt"'])
ldf_alphabet = st.sampled_from(list('{};:=,()[] 0123456789abc\n') +
                               ['LIN_description_file; ', 'Signals ', 'Frames ', '0x1F',
                                'ms', '"2.1"'])


class TestParserSafety:
    """Arbitrary text parses or fails with LexError/ParseError, never anything else."""

    @given(st.text(max_size=200))
    @settings(max_examples=300)
    def test_lexer(self, text):
        try:
            tokens = list(tokenize(text, Dialect.DBC))
        except LexError:
            return
        assert tokens[-1].kind.name == 'EOF'

    @given(st.lists(dbc_alphabet, max_size=80).map(''.join))
    @settings(max_examples=500, suppress_health_check=[HealthCheck.too_slow])
    def test_dbc(self, text):
        try:
            parse_dbc_text(text)
        except (LexError, ParseError):
            pass

    @given(st.lists(ldf_alphabet, max_size=80).map(''.join))
    @settings(max_examples=500, suppress_health_check=[HealthCheck.too_slow])
    def test_ldf(self, text):
        try:
            parse_ldf_text(text)
        except (LexError, ParseError):
            pass


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
