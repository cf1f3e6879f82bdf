"""Unit tests for the firmware line protocol."""

import pytest

from dispense_hardware.protocol import (
    LineKind,
    Token,
    decode_line,
    encode_command,
    motor_command,
    parse_line,
)


class TestParseLine:
    @pytest.mark.parametrize("token", list(Token))
    def test_known_tokens(self, token):
        parsed = parse_line(f"{token.value}\r\n")
        assert parsed.kind == LineKind.TOKEN
        assert parsed.token == token

    def test_informational(self):
        assert parse_line("ONOK").is_informational
        assert parse_line("INOK").is_informational
        assert parse_line("RCVOK").is_informational
        assert not parse_line("MMOK").is_informational

    @pytest.mark.parametrize("line", ["ERROR: 3", "Error: motor jammed", "error"])
    def test_fault_lines(self, line):
        assert parse_line(line).kind == LineKind.FAULT

    def test_unknown_line(self):
        parsed = parse_line("#@!")
        assert parsed.kind == LineKind.UNKNOWN
        assert parsed.token is None

    def test_blank_line(self):
        assert parse_line("\r\n").kind == LineKind.EMPTY


class TestCommands:
    def test_motor_command(self):
        assert motor_command("11") == "M11F"
        assert motor_command("A", "R") == "MAR"

    @pytest.mark.parametrize("slot_id", ["", "1 1"])
    def test_invalid_slot_rejected(self, slot_id):
        with pytest.raises(ValueError):
            motor_command(slot_id)

    def test_encode_appends_terminator(self):
        assert encode_command("I42S") == b"I42S\n"
        assert encode_command("M11F", "\r\n") == b"M11F\r\n"

    def test_decode_strips_crlf(self):
        assert decode_line(b"MMOK\r\n") == "MMOK"
