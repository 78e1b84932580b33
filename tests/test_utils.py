"""
Tests for utils.py — display helpers, ids and filename sanitizing.
"""

import os

import pytest

from nexus.utils import (
    format_size,
    format_time_remaining,
    new_id,
    parse_target,
    room_id_for,
    safe_filename,
    save_path,
)


class TestFormatSize:
    def test_bytes(self):
        assert format_size(0) == "0.0 B"
        assert format_size(512) == "512.0 B"
        assert format_size(1023) == "1023.0 B"

    def test_kilobytes(self):
        assert format_size(1024) == "1.0 KB"
        assert format_size(16 * 1024) == "16.0 KB"

    def test_megabytes(self):
        assert format_size(1024 * 1024) == "1.0 MB"
        assert format_size(int(1.5 * 1024 * 1024)) == "1.5 MB"

    def test_terabytes(self):
        assert format_size(1024**4) == "1.0 TB"


class TestFormatTimeRemaining:
    def test_expired(self):
        assert format_time_remaining(1000, 1000) == "Expired"

    def test_days_hours_minutes(self):
        minute = 60 * 1000
        assert format_time_remaining(2 * 24 * 60 * minute, 0) == "2d left"
        assert format_time_remaining(5 * 60 * minute + 10, 0) == "5h left"
        assert format_time_remaining(7 * minute, 0) == "7m left"
        assert format_time_remaining(30 * 1000, 0) == "<1m left"


class TestIds:
    def test_new_id_fits_chunk_prefix(self):
        assert len(new_id()) == 36
        assert new_id() != new_id()

    def test_room_id_is_stable_per_name(self):
        assert room_id_for("Team") == room_id_for(" team ")
        assert room_id_for("Team") != room_id_for("Other")
        assert len(room_id_for("Team")) == 36


class TestParseTarget:
    def test_with_port(self):
        assert parse_target("relay.local:9000", 8080) == ("relay.local", 9000)

    def test_default_port(self):
        assert parse_target("relay.local", 8080) == ("relay.local", 8080)


class TestSafeFilename:
    def test_plain_name_kept(self):
        assert safe_filename("report.pdf") == "report.pdf"

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("../../.bashrc", ".bashrc"),
            ("/etc/passwd", "passwd"),
            ("..\\..\\boot.ini", "boot.ini"),
            ("evil\x00.txt", "evil.txt"),
        ],
    )
    def test_directory_components_stripped(self, name, expected):
        assert safe_filename(name) == expected

    @pytest.mark.parametrize("name", ["", ".", "..", "../", "CON", "nul.txt", "LPT1"])
    def test_unusable_names_fall_back(self, name):
        assert safe_filename(name) == "download"

    def test_save_path_stays_in_destination(self, tmp_path):
        dest = str(tmp_path / "dl")
        for name in ("../../.bashrc", "/etc/x", "a/../../b"):
            path = save_path(dest, name)
            assert os.path.dirname(path) == dest
