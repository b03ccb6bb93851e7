"""Test the wire codec"""

import json
import struct

import pytest

from chunkxfer.errors import ProtocolError
from chunkxfer.transfer.protocol import (
    MAX_DATAGRAM_SIZE, PROTOCOL_VERSION, Cancel, ChunkAck, ChunkNack, DataChunk,
    Manifest, MessageType, NegotiationAck, TransferDone, decode_message, encode_message,
)


def raw(header: dict, payload: bytes = b'') -> bytes:
    body = json.dumps(header).encode('utf-8')
    return struct.pack('>I', len(body)) + body + payload


class TestEncoding:
    """Test messages survive the wire"""

    @pytest.mark.parametrize("message", [
        Manifest(transfer_id='t1', file_name='a/b.txt', size=10, chunk_size=4,
                 total_chunks=3, file_hash='ab' * 32),
        NegotiationAck(transfer_id='t1', accepted=False, reason='server busy'),
        ChunkAck(transfer_id='t1', index=7, cursor=3),
        ChunkNack(transfer_id='t1', index=2, reason='checksum'),
        TransferDone(transfer_id='t1', outcome='failed', reason='Timeout', detail='x'),
        Cancel(transfer_id='t1'),
    ])
    def test_control_messages(self, message):
        assert decode_message(encode_message(message)) == message

    def test_data_chunk_payload_is_raw(self):
        payload = bytes(range(256)) * 4
        message = DataChunk(transfer_id='t1', index=5, checksum='cc', payload=payload)

        data = encode_message(message)
        assert data.endswith(payload)
        assert decode_message(data) == message

    def test_header_names_type_and_version(self):
        data = encode_message(ChunkAck(transfer_id='t1', index=0))
        length = struct.unpack('>I', data[:4])[0]
        header = json.loads(data[4:4 + length])

        assert header['type'] == MessageType.CHUNK_ACK.value
        assert header['version'] == PROTOCOL_VERSION

    def test_oversized_message_is_refused(self):
        message = DataChunk(transfer_id='t1', index=0, checksum='c',
                            payload=b'x' * MAX_DATAGRAM_SIZE)
        with pytest.raises(ProtocolError):
            encode_message(message)


class TestDecodingErrors:
    """Test malformed datagrams are rejected, never half-parsed"""

    def test_too_short(self):
        with pytest.raises(ProtocolError):
            decode_message(b'\x00\x00')

    def test_header_length_past_end(self):
        with pytest.raises(ProtocolError):
            decode_message(struct.pack('>I', 500) + b'{}')

    def test_not_json(self):
        with pytest.raises(ProtocolError):
            decode_message(struct.pack('>I', 3) + b'{{{')

    def test_wrong_version(self):
        with pytest.raises(ProtocolError, match="Version"):
            decode_message(raw({'type': 'CANCEL', 'version': 99, 'transfer_id': 't'}))

    def test_unknown_type(self):
        with pytest.raises(ProtocolError, match="Unknown"):
            decode_message(raw({'type': 'HELLO', 'version': PROTOCOL_VERSION}))

    def test_missing_field(self):
        with pytest.raises(ProtocolError, match="index"):
            decode_message(raw({'type': 'CHUNK_ACK', 'version': PROTOCOL_VERSION,
                                'transfer_id': 't'}))

    @pytest.mark.parametrize("index", [-1, "3", True, 1.5])
    def test_bad_index(self, index):
        with pytest.raises(ProtocolError):
            decode_message(raw({'type': 'CHUNK_ACK', 'version': PROTOCOL_VERSION,
                                'transfer_id': 't', 'index': index}))

    def test_accepted_must_be_bool(self):
        with pytest.raises(ProtocolError):
            decode_message(raw({'type': 'NEGOTIATION_ACK', 'version': PROTOCOL_VERSION,
                                'transfer_id': 't', 'accepted': 1}))

    def test_payload_on_control_message(self):
        with pytest.raises(ProtocolError, match="payload"):
            decode_message(raw({'type': 'CANCEL', 'version': PROTOCOL_VERSION,
                                'transfer_id': 't'}, payload=b'junk'))

    def test_protocol_error_is_value_error(self):
        with pytest.raises(ValueError):
            decode_message(b'')
