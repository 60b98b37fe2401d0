"""
test_validate_network.py - Network invariant checks

Run with:
    pytest tests/test_validate_network.py -v
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
from diagnostics import Diagnostics, Severity, Stage
from network_ir import (
    BusType, ByteOrder, Message, MuxRole, Network, Schedule, ScheduleEntry, Signal, ValueKind,
)
from pipeline import convert, parse_network
from validate_network import validate, validate_result

LE = ByteOrder.LITTLE_ENDIAN


def sig(name, start, width, **kwargs):
    kwargs.setdefault('byte_order', LE)
    return Signal(name=name, start_bit=start, width=width, **kwargs)


def can(*messages, **kwargs):
    return Network(name='test', bus_type=BusType.CAN, messages=tuple(messages), **kwargs)


def codes(diagnostics):
    return [d.code for d in diagnostics]


class TestSamples:
    """The sample descriptions are valid."""

    def test_body(self, body_network):
        assert validate(body_network) == []

    def test_chassis(self, chassis_network):
        assert validate(chassis_network) == []

    def test_motor(self, motor_network):
        assert validate(motor_network) == []


class TestChecks:
    """One violation of each kind."""

    def test_duplicate_identifier(self):
        network = can(Message(0, 'A', 0x100, 8), Message(1, 'B', 0x100, 8),
                      Message(2, 'C', 0x100, 8, is_extended=True))
        found = validate(network)
        assert codes(found) == ['duplicate-identifier']
        assert 'B' in found[0].context

    def test_signal_out_of_range(self):
        found = validate(can(Message(0, 'A', 1, 2, signals=(sig('S', 12, 8),))))
        assert codes(found) == ['signal-out-of-range']

    def test_big_endian_out_of_range(self):
        # MSB at bit 1 of byte 0, 16 bits run to bit 2 of byte 2
        signal = sig('S', 1, 16, byte_order=ByteOrder.BIG_ENDIAN)
        found = validate(can(Message(0, 'A', 1, 2, signals=(signal,))))
        assert codes(found) == ['signal-out-of-range']

    def test_multiplexor_count(self):
        message = Message(0, 'A', 1, 8, signals=(
            sig('S1', 0, 8, mux_role=MuxRole.SELECTOR),
            sig('S2', 8, 8, mux_role=MuxRole.SELECTOR),
            sig('X', 16, 8, mux_role=MuxRole.MULTIPLEXED, mux_value=1),
        ))
        assert codes(validate(can(message))) == ['multiplexor-count']

    def test_multiplexed_without_selector(self):
        message = Message(0, 'A', 1, 8, signals=(
            sig('X', 16, 8, mux_role=MuxRole.MULTIPLEXED, mux_value=1),
        ))
        assert codes(validate(can(message))) == ['multiplexor-count']

    def test_zero_scale(self):
        found = validate(can(Message(0, 'A', 1, 8, signals=(sig('S', 0, 8, scale=0.0),))))
        assert codes(found) == ['zero-scale']

    @pytest.mark.parametrize('width,kind', [(0, ValueKind.UNSIGNED), (65, ValueKind.UNSIGNED),
                                            (16, ValueKind.FLOAT)])
    def test_invalid_width(self, width, kind):
        found = validate(can(Message(0, 'A', 1, 16, signals=(sig('S', 0, width, kind=kind),))))
        assert 'invalid-width' in codes(found)

    def test_identifier_range(self):
        network = can(Message(0, 'A', 0x800, 8), Message(1, 'B', 0x800, 8, is_extended=True))
        assert codes(validate(network)) == ['identifier-range']

    def test_lin_limits(self):
        network = Network(name='lin', bus_type=BusType.LIN, messages=(
            Message(0, 'A', 64, 8), Message(1, 'B', 1, 9), Message(2, 'C', 2, 0)))
        assert codes(validate(network)) == ['identifier-range', 'message-length', 'message-length']

    def test_can_fd_length_allowed(self):
        assert validate(can(Message(0, 'A', 1, 64))) == []

    def test_validation_does_not_mutate(self, body_network):
        before = hash(body_network.messages)
        validate(body_network)
        assert hash(body_network.messages) == before


class TestOverlap:
    """Bit-range overlap rules."""

    def test_disjoint(self):
        message = Message(0, 'A', 1, 8, signals=(sig('S1', 0, 8), sig('S2', 8, 8)))
        assert validate(can(message)) == []

    def test_big_endian_neighbours(self):
        # 7|16@0 covers bytes 0-1; 23|8@0 is byte 2
        message = Message(0, 'A', 1, 8, signals=(
            sig('S1', 7, 16, byte_order=ByteOrder.BIG_ENDIAN),
            sig('S2', 23, 8, byte_order=ByteOrder.BIG_ENDIAN)))
        assert validate(can(message)) == []

    def test_one_diagnostic_per_pair(self):
        message = Message(0, 'A', 1, 8, signals=(
            sig('S1', 0, 16), sig('S2', 8, 8), sig('S3', 12, 8)))
        found = validate(can(message))
        assert codes(found) == ['bit-range-overlap'] * 3

    def test_same_selector_value_overlap(self):
        message = Message(0, 'A', 1, 8, signals=(
            sig('Sel', 0, 8, mux_role=MuxRole.SELECTOR),
            sig('X', 8, 8, mux_role=MuxRole.MULTIPLEXED, mux_value=1),
            sig('Y', 8, 8, mux_role=MuxRole.MULTIPLEXED, mux_value=1)))
        assert codes(validate(can(message))) == ['bit-range-overlap']

    def test_multiplexed_overlapping_selector(self):
        message = Message(0, 'A', 1, 8, signals=(
            sig('Sel', 0, 8, mux_role=MuxRole.SELECTOR),
            sig('X', 4, 8, mux_role=MuxRole.MULTIPLEXED, mux_value=1)))
        assert codes(validate(can(message))) == ['bit-range-overlap']

    def test_duplicate_signal_names_still_compared(self):
        message = Message(0, 'A', 1, 8, signals=(sig('S', 0, 8), sig('S', 4, 8)))
        assert codes(validate(can(message))) == ['bit-range-overlap']


class TestCompleteness:
    """N independent violations give N diagnostics."""

    def test_five_violations(self):
        network = can(
            Message(0, 'A', 0x100, 2, signals=(sig('S1', 0, 8), sig('S2', 4, 8),
                                               sig('Empty', 0, 0))),
            Message(1, 'B', 0x100, 1, signals=(sig('Z', 0, 8, scale=0),
                                               sig('Far', 8, 8))),
        )
        found = validate(network)
        assert sorted(codes(found)) == sorted([
            'bit-range-overlap', 'invalid-width', 'duplicate-identifier', 'zero-scale',
            'signal-out-of-range'])

    def test_result_object(self):
        network = can(Message(0, 'A', 1, 8), Message(1, 'B', 1, 8))
        result = validate_result(network)
        assert not result.valid
        assert len(result.errors) == 1
        assert result.to_dict()['errors'][0]['code'] == 'duplicate-identifier'


class TestSchedules:
    """Schedule references."""

    def test_unresolved_frame(self):
        network = Network(name='lin', bus_type=BusType.LIN,
                          messages=(Message(0, 'F', 1, 1),),
                          schedules=(Schedule(0, 'T', (ScheduleEntry('F', 10.0, 0),
                                                       ScheduleEntry('G', 10.0, None))),))
        found = validate(network)
        assert len(found) == 1
        assert found[0].stage == Stage.REFERENCE
        assert "'G'" in found[0].message


DBC_HEADER = 'BU_: ECU\n'


class TestScenarios:
    """End-to-end scenarios through the pipeline."""

    def test_multiplexed_signals_share_bits(self):
        text = DBC_HEADER + (
            'BO_ 512 Muxed: 8 ECU\n'
            ' SG_ Selector M : 0|1@1+ (1,0) [0|1] "" ECU\n'
            ' SG_ WhenZero m0 : 8|8@1+ (1,0) [0|255] "" ECU\n'
            ' SG_ WhenOne m1 : 8|8@1+ (1,0) [0|255] "" ECU\n')
        result = convert(text, 'dbc', targets=[])
        assert result.diagnostics.by_code('bit-range-overlap') == []
        assert not result.diagnostics.has_errors
        plans = result.network_plan.plans_for(0)
        by_name = {p.signal: p for p in plans}
        assert by_name['WhenZero'].selector_value == 0
        assert by_name['WhenOne'].selector_value == 1
        assert by_name['WhenZero'].selector_name == 'Selector'

    def test_plain_overlap_is_one_violation(self):
        text = DBC_HEADER + (
            'BO_ 256 Overlap: 8 ECU\n'
            ' SG_ First : 0|16@1+ (1,0) [0|0] "" ECU\n'
            ' SG_ Second : 8|16@1+ (1,0) [0|0] "" ECU\n')
        diagnostics = Diagnostics()
        network = parse_network(text, 'dbc', diagnostics)
        found = validate(network)
        assert len(found) == 1
        assert found[0].code == 'bit-range-overlap'
        assert found[0].severity == Severity.ERROR

    def test_missing_schedule_frame(self, chassis_ldf_text):
        text = chassis_ldf_text.replace('LSM_Frm1 delay 15 ms;', 'Ghost_Frm delay 15 ms;')
        result = convert(text, 'ldf', targets=['c'], config=None)
        errors = result.diagnostics.errors
        assert len(errors) == 1
        assert errors[0].stage == Stage.REFERENCE
        assert 'Ghost_Frm' in errors[0].message
        assert 'NormalTable' in errors[0].context
        assert 'c' in result.sources
        assert 'CEM_FRM1_ID' in result.sources['c']
