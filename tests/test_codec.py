"""Test wire encoding and text repair"""

import json
import pytest

from habitsync.errors import EncodingError
from habitsync.remote.codec import (
    decode_snapshot, decode_text, encode_snapshot, encode_text, from_base64,
    looks_mojibake, repair_mojibake
)
from conftest import make_record, make_snapshot

SAMPLES = [
    "plain ascii",
    "café crème",
    "Ünïcödé",
    "emoji 🏃‍♀️ and 😀",
    "combining e\u0301 and n\u0303",
    "日本語のテキスト",
    "\U0010ffff edge",
    "",
]


class TestTextEncoding:
    """Test base64 text transport"""

    def test_round_trip(self):
        """Test decode(encode(s)) == s for assorted Unicode"""
        for text in SAMPLES:
            assert decode_text(encode_text(text)) == text

    def test_tolerates_line_breaks(self):
        """Test base64 split across lines still decodes"""
        encoded = encode_text("emoji 😀 " * 20)
        wrapped = '\n'.join(encoded[i:i + 60] for i in range(0, len(encoded), 60))
        assert decode_text(wrapped) == "emoji 😀 " * 20

    def test_invalid_base64(self):
        """Test garbage base64 is an encoding error"""
        with pytest.raises(EncodingError):
            from_base64("not*base64!")

    def test_invalid_utf8(self):
        """Test non UTF-8 payload is an encoding error"""
        with pytest.raises(EncodingError):
            decode_text("//79")  # 0xff 0xfe 0xfd


class TestSnapshotEncoding:
    """Test snapshot documents"""

    def test_snapshot_round_trip(self):
        """Test records and settings survive encoding"""
        snapshot = make_snapshot(
            make_record("a", text="Méditer 🧘"),
            make_record("b", text="é", completed=True, created_minutes=1, minutes=5),
            settings={'theme': 'dark'}
        )

        decoded = decode_snapshot(encode_snapshot(snapshot))

        assert decoded.records == snapshot.records
        assert decoded.settings == snapshot.settings
        assert decoded.last_sync == snapshot.last_sync

    def test_document_shape(self):
        """Test the stored JSON layout"""
        document = json.loads(encode_snapshot(make_snapshot(make_record("a"))).decode('utf-8'))

        assert set(document) == {'version', 'lastSync', 'lastResetDate', 'habits', 'settings'}
        assert document['habits'][0]['createdAt'] == '2026-03-01T12:00:00.000Z'

    def test_raw_utf8_not_escaped(self):
        """Test non-ASCII text is stored as UTF-8, not escapes"""
        content = encode_snapshot(make_snapshot(make_record("a", text="😀")))
        assert "😀".encode('utf-8') in content

    def test_byte_order_mark(self):
        """Test a leading BOM is ignored"""
        content = b'\xef\xbb\xbf' + encode_snapshot(make_snapshot(make_record("a")))
        assert decode_snapshot(content).get("a") is not None

    def test_missing_updated_at_defaults_to_created(self):
        """Test older documents without updatedAt"""
        content = json.dumps({
            'lastSync': '2026-03-01T12:00:00Z',
            'habits': [{'id': 'a', 'text': 'Run', 'createdAt': '2026-03-01T10:00:00Z'}]
        }).encode('utf-8')

        record = decode_snapshot(content).get("a")
        assert record.updated_at == record.created_at

    @pytest.mark.parametrize("content", [
        b'\xff\xfe',
        b'{"habits": [',
        b'[1, 2, 3]',
        b'{"habits": [{"text": "no id"}]}',
    ])
    def test_malformed_documents(self, content):
        """Test malformed content surfaces as EncodingError"""
        with pytest.raises(EncodingError):
            decode_snapshot(content)


class TestMojibakeRepair:
    """Test repair of Latin-1 mis-decoded text"""

    def test_detects_and_repairs(self):
        """Test single mis-decode is undone"""
        for text in ["café", "emoji 😀", "Ünïcödé", "naïve – dash"]:
            broken = text.encode('utf-8').decode('cp1252')
            assert looks_mojibake(broken)
            assert repair_mojibake(broken) == text

    def test_double_encoding(self):
        """Test text broken twice is repaired"""
        once = "café".encode('utf-8').decode('latin-1')
        twice = once.encode('utf-8').decode('latin-1')
        assert repair_mojibake(twice) == "café"

    def test_clean_text_unchanged(self):
        """Test correct text is left alone"""
        for text in SAMPLES:
            assert not looks_mojibake(text) or repair_mojibake(text) == text
        assert repair_mojibake("café") == "café"
        assert not looks_mojibake("")
