"""
test_ncf_parser.py - LIN node capability file grammar

Run with:
    pytest tests/test_ncf_parser.py -v
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
from diagnostics import ParseError
from ncf_parser import parse_ncf_text


class TestSample:
    """tests/data/motor.ncf"""

    @pytest.fixture(scope='class')
    def parsed(self, motor_ncf_text):
        return parse_ncf_text(motor_ncf_text)

    def test_no_diagnostics(self, parsed):
        _, diagnostics = parsed
        assert diagnostics == []

    def test_node(self, parsed):
        ast, _ = parsed
        assert ast.language_version == '2.1'
        node = ast.nodes[0]
        assert node.name == 'step_motor'
        assert node.protocol_version == '2.1'
        assert node.general['supplier'] == [0x0005]
        assert node.general['bitrate'] == ['automatic', 'min', 10, 'kbps', 'max', 20, 'kbps']
        assert node.diagnostic['NAD'] == [1, 'to', 3]
        assert node.diagnostic['support_sid'] == [0xB0, 0xB2, 0xB7]
        assert node.free_text == 'step motor controller, rev B'

    def test_frames(self, parsed):
        ast, _ = parsed
        status, control = ast.nodes[0].frames
        assert status.is_published and not control.is_published
        assert (status.length, status.min_period_ms, status.max_period_ms) == (4, 10.0, 100.0)
        assert status.message_id is None
        assert [s.name for s in status.signals] == ['state', 'fault_state', 'error_bit', 'angle']

    def test_signals(self, parsed):
        ast, _ = parsed
        state, fault, error_bit, angle = ast.nodes[0].frames[0].signals
        assert (state.size, state.offset, state.encoding) == (8, 0, 'motor_state')
        assert (fault.size, fault.offset) == (2, 9)
        assert error_bit.encoding is None
        assert angle.init_value == [0x00, 0x80]

    def test_encodings_and_status(self, parsed):
        ast, _ = parsed
        node = ast.nodes[0]
        assert [e.name for e in node.encodings] == ['motor_state', 'fault_enc', 'angle_enc']
        assert node.encodings[2].values[0].scale == 0.01
        assert node.response_error == 'error_bit'
        assert node.fault_state_signals == ['fault_state']


class TestGrammar:
    """Constructs not covered by the sample."""

    def test_message_id_and_several_nodes(self):
        ast, diagnostics = parse_ncf_text(
            'node_capability_file;\n'
            'node A { frames { publish F { length = 2; message_ID = 0x2A; '
            'signals { s { size = 8; offset = 0; } } } } }\n'
            'node B { frames { subscribe F { length = 2; signals { } } } }\n')
        assert diagnostics == []
        assert [n.name for n in ast.nodes] == ['A', 'B']
        assert ast.nodes[0].frames[0].message_id == 0x2A

    def test_unknown_section_warns(self):
        ast, diagnostics = parse_ncf_text(
            'node_capability_file;\nnode A { vendor_data { x = 1; } free_text { "t" } }\n')
        assert ast.nodes[0].free_text == 't'
        assert [d.code for d in diagnostics] == ['unsupported-block']

    def test_bad_frame_direction(self):
        ast, diagnostics = parse_ncf_text(
            'node_capability_file;\n'
            'node A { frames { broadcast F { length = 1; } publish G { length = 1; } } }\n')
        assert [f.name for f in ast.nodes[0].frames] == ['G']
        assert len(diagnostics) == 1
        assert 'publish or subscribe' in diagnostics[0].message


class TestUnrecoverable:

    def test_missing_header(self):
        with pytest.raises(ParseError):
            parse_ncf_text('node A { }')

    def test_unclosed_node(self):
        with pytest.raises(ParseError):
            parse_ncf_text('node_capability_file;\nnode A { general { x = 1; }\n')
