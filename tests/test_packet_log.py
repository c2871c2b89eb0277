"""Tests for the packet log and its exports"""

import json
from datetime import datetime, timedelta

import pytest

from replayr.codec import PayloadEncoding, decode, encode, payload_from_bytes
from replayr.errors import EmptyScript, ParseError
from replayr.packet_log import (
    Direction,
    ExportFormat,
    LogEntry,
    PacketLog,
    ReplayEntry,
    ReplayScript,
    import_replay,
    load_replay_file,
)

T0 = datetime(2026, 10, 18, 14, 3, 11, 250000)


def hex_payload(text):
    return encode(text, PayloadEncoding.HEX)


class TestPacketLog:
    """Tests for append/record ordering"""

    def test_sequence_numbers_increase(self):
        log = PacketLog(owner="s1")
        entries = [log.record(Direction.SYSTEM, note=str(i)) for i in range(3)]
        assert [e.sequence for e in entries] == [0, 1, 2]
        assert log.next_sequence == 3
        assert len(log) == 3

    def test_append_rejects_repeated_sequence(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="connecting", timestamp=T0)
        with pytest.raises(ValueError):
            log.append(LogEntry(sequence=0, timestamp=T0, direction=Direction.SYSTEM))

    def test_append_rejects_earlier_timestamp(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="connecting", timestamp=T0)
        with pytest.raises(ValueError):
            log.append(LogEntry(
                sequence=1,
                timestamp=T0 - timedelta(seconds=1),
                direction=Direction.SYSTEM,
            ))

    def test_append_accepts_gaps(self):
        log = PacketLog()
        log.append(LogEntry(sequence=0, timestamp=T0, direction=Direction.SYSTEM))
        log.append(LogEntry(sequence=5, timestamp=T0, direction=Direction.SYSTEM))
        assert log.next_sequence == 6

    def test_record_clamps_clock_stepping_back(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="a", timestamp=T0)
        entry = log.record(Direction.SYSTEM, note="b", timestamp=T0 - timedelta(seconds=5))
        assert entry.timestamp == T0

    def test_sealed_log_rejects_appends(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="closed")
        log.seal()
        assert log.sealed
        with pytest.raises(ValueError):
            log.record(Direction.SYSTEM, note="late")
        # Still exportable
        assert "closed" in log.export_human()

    def test_sent_and_received_views(self):
        log = PacketLog()
        log.record(Direction.SENT, payload=hex_payload("01"))
        log.record(Direction.RECEIVED, payload=payload_from_bytes(b"\x02"))
        log.record(Direction.SYSTEM, note="closed")
        assert len(log.sent_entries()) == 1
        assert len(log.received_entries()) == 1
        assert log.to_dict()["entry_count"] == 3


class TestHumanExport:
    """Tests for the human-readable export"""

    def test_lines(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="connecting", timestamp=T0)
        log.record(Direction.SENT, payload=hex_payload("48656C6C6F"), timestamp=T0)
        log.record(Direction.RECEIVED, payload=payload_from_bytes(b"Hello"), timestamp=T0)
        log.record(Direction.SENT, payload=encode("hi there", PayloadEncoding.ASCII), timestamp=T0)

        lines = log.export_human().splitlines()
        assert lines == [
            "2026-10-18T14:03:11.250 System system connecting",
            "2026-10-18T14:03:11.250 Sent hex 48656C6C6F",
            "2026-10-18T14:03:11.250 Received hex 48656c6c6f",
            "2026-10-18T14:03:11.250 Sent ascii hi there",
        ]

    def test_control_characters_stay_on_one_line(self):
        log = PacketLog()
        request = "GET / HTTP/1.0\r\n\r\n"
        entry = log.record(Direction.SENT, payload=encode(request, PayloadEncoding.ASCII),
                           timestamp=T0)
        log.record(Direction.SYSTEM, note="closed", timestamp=T0)

        lines = log.export_human().splitlines()
        assert lines == [
            "2026-10-18T14:03:11.250 Sent ascii GET / HTTP/1.0\\r\\n\\r\\n",
            "2026-10-18T14:03:11.250 System system closed",
        ]
        # Only the human view is escaped
        assert decode(entry.payload) == request
        assert log.export_replay()[0].to_record()["data"] == request

    def test_tab_and_backslash_escaped(self):
        log = PacketLog()
        log.record(Direction.SENT, payload=encode("a\tb\\c", PayloadEncoding.ASCII), timestamp=T0)
        assert log.export_human() == "2026-10-18T14:03:11.250 Sent ascii a\\tb\\\\c\n"

    def test_received_note_shown(self):
        log = PacketLog()
        log.record(Direction.RECEIVED, payload=payload_from_bytes(b"\x01"),
                   note="from 192.0.2.5:5353", timestamp=T0)
        assert log.export_human() == (
            "2026-10-18T14:03:11.250 Received hex 01 (from 192.0.2.5:5353)\n"
        )

    def test_empty_log(self):
        assert PacketLog().export_human() == ""


class TestReplayExport:
    """Tests for deriving replay scripts"""

    def test_only_sends_with_gaps(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="connected", timestamp=T0)
        log.record(Direction.SENT, payload=hex_payload("01"), timestamp=T0)
        log.record(Direction.RECEIVED, payload=payload_from_bytes(b"\x01"),
                   timestamp=T0 + timedelta(milliseconds=50))
        log.record(Direction.SENT, payload=hex_payload("02"),
                   timestamp=T0 + timedelta(milliseconds=100))
        log.record(Direction.SENT, payload=encode("x", PayloadEncoding.ASCII),
                   timestamp=T0 + timedelta(milliseconds=250))

        script = log.export_replay()
        assert [e.delay_ms for e in script] == [0, 100, 150]
        assert [e.payload.data for e in script] == [b"\x01", b"\x02", b"x"]
        assert script.total_delay_ms == 250
        assert script.to_records()[2] == {"delay_ms": 150, "encoding": "ascii", "data": "x"}

    def test_sub_millisecond_gaps_round(self):
        log = PacketLog()
        log.record(Direction.SENT, payload=hex_payload("01"), timestamp=T0)
        log.record(Direction.SENT, payload=hex_payload("02"),
                   timestamp=T0 + timedelta(microseconds=1600))
        assert log.export_replay()[1].delay_ms == 2

    def test_no_sends_is_empty_script(self):
        log = PacketLog()
        log.record(Direction.SYSTEM, note="connected")
        log.record(Direction.RECEIVED, payload=payload_from_bytes(b"banner"))
        with pytest.raises(EmptyScript):
            log.export_replay()

    def test_export_import_preserves_sends(self):
        log = PacketLog()
        log.record(Direction.SENT, payload=hex_payload("DE AD"), timestamp=T0)
        log.record(Direction.SENT, payload=encode("ping", PayloadEncoding.ASCII),
                   timestamp=T0 + timedelta(milliseconds=40))

        script = import_replay(log.export_replay().to_bytes())
        assert [(e.payload.data, e.delay_ms) for e in script] == [(b"\xde\xad", 0), (b"ping", 40)]
        assert script[0].payload.encoding == PayloadEncoding.HEX
        assert script[1].payload.encoding == PayloadEncoding.ASCII


class TestImportReplay:
    """Tests for parsing replay files"""

    def test_unknown_fields_ignored(self):
        raw = json.dumps([{"delay_ms": 5, "encoding": "hex", "data": "0a", "comment": "x"}])
        script = import_replay(raw)
        assert script[0].delay_ms == 5
        assert script[0].payload.data == b"\n"

    def test_missing_data(self):
        with pytest.raises(ParseError) as exc:
            import_replay('[{"delay_ms": 0, "encoding": "hex"}]')
        assert exc.value.field == "records[0].data"

    def test_negative_delay(self):
        with pytest.raises(ParseError) as exc:
            import_replay('[{"delay_ms": -1, "encoding": "hex", "data": "00"}]')
        assert exc.value.field == "records[0].delay_ms"

    def test_boolean_delay(self):
        with pytest.raises(ParseError) as exc:
            import_replay('[{"delay_ms": true, "encoding": "hex", "data": "00"}]')
        assert exc.value.field == "records[0].delay_ms"

    def test_bad_encoding(self):
        with pytest.raises(ParseError) as exc:
            import_replay('[{"delay_ms": 0, "encoding": "base64", "data": "AA=="}]')
        assert exc.value.field == "records[0].encoding"

    def test_bad_hex_names_record(self):
        raw = json.dumps([
            {"delay_ms": 0, "encoding": "hex", "data": "00"},
            {"delay_ms": 0, "encoding": "hex", "data": "0G"},
        ])
        with pytest.raises(ParseError) as exc:
            import_replay(raw)
        assert exc.value.field == "records[1].data"
        assert str(exc.value).startswith("records[1].data:")

    def test_not_a_list(self):
        with pytest.raises(ParseError) as exc:
            import_replay('{"delay_ms": 0}')
        assert exc.value.field is None

    def test_invalid_json(self):
        with pytest.raises(ParseError):
            import_replay(b"[{")

    def test_invalid_utf8(self):
        with pytest.raises(ParseError):
            import_replay(b"\xff\xfe")

    def test_load_file(self, tmp_path):
        script = ReplayScript([ReplayEntry(payload=hex_payload("01"), delay_ms=0)])
        path = tmp_path / "session.json"
        path.write_bytes(script.to_bytes())
        assert len(load_replay_file(path)) == 1

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ParseError):
            load_replay_file(tmp_path / "missing.json")


class TestExportFormat:

    def test_parse(self):
        assert ExportFormat.parse("Human") == ExportFormat.HUMAN
        assert ExportFormat.parse(ExportFormat.REPLAY) == ExportFormat.REPLAY
        with pytest.raises(ValueError):
            ExportFormat.parse("pcap")
