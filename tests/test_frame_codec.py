"""
test_frame_codec.py - Runtime encode/decode through codec plans

Run with:
    pytest tests/test_frame_codec.py -v
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
from frame_codec import FrameCodec
from network_ir import BusType, ByteOrder, Message, Network, Signal, ValueKind
from pipeline import parse_network
from diagnostics import Diagnostics


@pytest.fixture
def body_codec(body_network):
    return FrameCodec(body_network)


class TestScaledSignal:
    """A single scaled little-endian signal."""

    @pytest.fixture
    def codec(self):
        text = ('BU_: ECU\n'
                'BO_ 256 Speed: 8 ECU\n'
                ' SG_ VehicleSpeed : 0|16@1+ (0.1,0) [0|6553.5] "km/h" ECU\n')
        return FrameCodec(parse_network(text, 'dbc', Diagnostics()))

    def test_encode(self, codec):
        result = codec.encode(0x100, {'VehicleSpeed': 25.5})
        assert result.success
        assert result.warnings == []
        assert result.payload == bytes([0xFF, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])

    def test_decode(self, codec):
        result = codec.decode(0x100, bytes([0xFF, 0x00, 0, 0, 0, 0, 0, 0]))
        assert result.success
        assert result.raw['VehicleSpeed'] == 255
        assert result.data['VehicleSpeed'] == pytest.approx(25.5)

    def test_reference_by_name(self, codec):
        assert codec.encode('Speed', {'VehicleSpeed': 0.1}).payload[0] == 1


class TestEncode:
    """Encoding the sample network."""

    def test_engine_data(self, body_codec):
        result = body_codec.encode('EngineData', {
            'EngineSpeed': 1000, 'CoolantTemp': 20, 'Torque': -1, 'Gear': 3})
        assert result.success
        assert result.warnings == []
        # 1000 / 0.25 = 4000 = 0x0FA0; 20 + 40 = 60; -1 / 0.5 = -2 -> 0xFFE
        assert result.payload == bytes([0xA0, 0x0F, 60, 0xFE, 0x3F, 0, 0, 0])

    def test_big_endian(self, body_codec):
        result = body_codec.encode('BrakeStatus', {'BrakePressure': 466.0, 'BrakeActive': 1})
        assert result.payload == bytes([0x12, 0x34, 0x80, 0x00])

    def test_missing_values_use_zero(self, body_codec):
        result = body_codec.encode('BrakeStatus', {})
        assert result.payload == bytes(4)

    def test_clamping_warns(self, body_codec):
        result = body_codec.encode('EngineData', {'Gear': 9})
        assert result.success
        assert len(result.warnings) == 1
        assert 'clamped to 7' in result.warnings[0]
        assert result.payload[4] == 0x70

    def test_float32_out_of_range_is_clamped(self, body_codec):
        result = body_codec.encode('Diagnostics', {'Mode': 2, 'Temperature': 1e40})
        assert result.success
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith('Temperature: 1e+40')
        assert 'clamped to 3.4028234663852886e+38' in result.warnings[0]
        # FLT_MAX = 0x7F7FFFFF, little-endian from byte 3
        assert result.payload[3:7] == bytes([0xFF, 0xFF, 0x7F, 0x7F])
        decoded = body_codec.decode('Diagnostics', result.payload)
        assert decoded.data['Temperature'] == 3.4028234663852886e38

    def test_float32_negative_out_of_range(self, body_codec):
        result = body_codec.encode('Diagnostics', {'Mode': 2, 'Temperature': -1e40})
        assert result.success
        assert result.payload[3:7] == bytes([0xFF, 0xFF, 0x7F, 0xFF])

    def test_float32_infinity_is_packed(self, body_codec):
        result = body_codec.encode('Diagnostics', {'Mode': 2, 'Temperature': float('inf')})
        assert result.success
        assert result.warnings == []
        assert result.payload[3:7] == bytes([0x00, 0x00, 0x80, 0x7F])

    def test_non_numeric_value_is_error(self, body_codec):
        result = body_codec.encode('EngineData', {'Gear': 'top'})
        assert not result.success
        assert result.errors[0].startswith('Gear')

    def test_unknown_signal_warns(self, body_codec):
        result = body_codec.encode('EngineData', {'Boost': 1})
        assert result.warnings == ['EngineData has no signal Boost']

    def test_unknown_message(self, body_codec):
        result = body_codec.encode('Nope', {})
        assert not result.success
        assert result.payload == b''


class TestMultiplexing:
    """Only signals selected by the multiplexor are packed."""

    def test_active_group(self, body_codec):
        result = body_codec.encode('Diagnostics', {'Mode': 1, 'Voltage': 12.5})
        assert result.warnings == []
        assert result.payload[:3] == bytes([1, 0xD4, 0x30])

    def test_inactive_value_ignored(self, body_codec):
        result = body_codec.encode('Diagnostics', {'Mode': 1, 'Current': 3.0})
        assert result.success
        assert len(result.warnings) == 1
        assert 'Current ignored' in result.warnings[0]
        assert result.payload == bytes([1, 0, 0, 0, 0, 0, 0, 0])

    def test_decode_only_active_group(self, body_codec):
        payload = bytes([2, 0x2C, 0x01, 0x00, 0x00, 0x20, 0x41, 0x00])
        result = body_codec.decode('Diagnostics', payload)
        assert set(result.data) == {'Mode', 'Current', 'Temperature'}
        assert result.data['Current'] == pytest.approx(3.0)
        assert result.data['Temperature'] == 10.0

    def test_round_trip(self, body_codec):
        encoded = body_codec.encode('Diagnostics', {'Mode': 2, 'Current': -1.5,
                                                   'Temperature': 21.5})
        decoded = body_codec.decode('Diagnostics', encoded.payload)
        assert decoded.data['Current'] == pytest.approx(-1.5)
        assert decoded.data['Temperature'] == 21.5


class TestDecode:
    """Decoding edge cases."""

    def test_labels(self, body_codec):
        result = body_codec.decode('EngineData', bytes([0, 0, 0, 0, 0x30, 0, 0, 0]))
        assert result.data['Gear'] == 3
        assert result.labels == {'Gear': 'Drive'}

    def test_offset(self, body_codec):
        result = body_codec.decode('EngineData', bytes(8))
        assert result.data['CoolantTemp'] == -40

    def test_short_payload(self, body_codec):
        result = body_codec.decode('EngineData', bytes(4))
        assert not result.success
        assert 'shorter' in result.errors[0]
        assert result.data == {}

    def test_trailing_bytes(self, body_codec):
        result = body_codec.decode('BrakeStatus', bytes(6))
        assert result.success
        assert result.warnings == ['2 trailing bytes ignored']


class TestFailedPlans:
    """Messages without a plan are refused."""

    def test_refused(self):
        bad = Message(0, 'Bad', 1, 1, signals=(
            Signal('Wide', 0, 16, ByteOrder.LITTLE_ENDIAN),))
        codec = FrameCodec(Network('n', BusType.CAN, messages=(bad,)))
        encoded = codec.encode('Bad', {'Wide': 1})
        assert not encoded.success
        assert 'no codec plan' in encoded.errors[0]
        assert not codec.decode(1, bytes(1)).success


class TestLin:
    """LIN frames from the sample LDF."""

    def test_initial_value(self, chassis_network):
        codec = FrameCodec(chassis_network)
        assert codec.encode('LSM_Frm2', {}).payload == bytes([40])

    def test_physical_encoding(self, chassis_network):
        codec = FrameCodec(chassis_network)
        decoded = codec.decode('LSM_Frm2', bytes([120]))
        assert decoded.data['AmbientTemp'] == pytest.approx(20.0)

    def test_float_signal(self):
        signal = Signal('F', 0, 64, ByteOrder.LITTLE_ENDIAN, kind=ValueKind.FLOAT)
        codec = FrameCodec(Network('n', BusType.CAN, messages=(Message(0, 'M', 1, 8,
                                                                       signals=(signal,)),)))
        payload = codec.encode('M', {'F': -2.0}).payload
        assert payload == bytes([0, 0, 0, 0, 0, 0, 0, 0xC0])
        assert codec.decode('M', payload).data['F'] == -2.0
