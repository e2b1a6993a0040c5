import pytest

from varnishconf.domain.durations import to_seconds


class TestToSeconds:
    def test_numbers_pass_through(self):
        assert to_seconds(5) == 5
        assert to_seconds(2.5) == 2.5

    def test_numeric_string(self):
        assert to_seconds("30") == 30

    def test_empty_values(self):
        assert to_seconds(None) is None
        assert to_seconds("") is None
        assert to_seconds("   ") is None

    def test_single_unit(self):
        assert to_seconds("4m") == 240
        assert to_seconds("24h") == 86400
        assert to_seconds("1w") == 604800

    def test_long_unit_names(self):
        assert to_seconds("2 minutes") == 120
        assert to_seconds("1 day") == 86400

    def test_combined_segments(self):
        assert to_seconds("1h 30m") == 5400
        assert to_seconds("1h30m10s") == 5410

    def test_fractional_result(self):
        assert to_seconds("1.5s") == 1.5
        assert to_seconds("0.5m") == 30

    def test_missing_unit(self):
        with pytest.raises(ValueError, match="Time unit missing"):
            to_seconds("1h 30")

    def test_unknown_unit(self):
        with pytest.raises(ValueError, match="Time unit not valid"):
            to_seconds("250ms")

    def test_invalid_characters(self):
        with pytest.raises(ValueError):
            to_seconds("soon")

    def test_booleans_rejected(self):
        with pytest.raises(ValueError):
            to_seconds(True)
