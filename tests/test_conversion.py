"""
Unit tests for color representation.

Covers hex normalization, HSL normalization for grayscale colors, LAB
conversion and the distance primitives.
"""
import pytest

from chromalearn.errors import ColorValidationError
from chromalearn.services.colors.conversion import (
    ColorSample, delta_e, hex_to_rgb, hue_distance, is_valid_hex, lab_distance,
    normalize_hex, normalize_hsl, parse_color, rgb_to_hex,
)


class TestHexHandling:
    """Test hex parsing and formatting"""

    def test_normalize_hex_variants(self):
        """Test shorthand, lowercase and missing # forms"""
        assert normalize_hex("#1f4e79") == "#1F4E79"
        assert normalize_hex("1F4E79") == "#1F4E79"
        assert normalize_hex("#abc") == "#AABBCC"
        assert normalize_hex("  #FFFFFF ") == "#FFFFFF"

    @pytest.mark.parametrize("value", ["", "#12345", "#GGGGGG", "red", None, 123])
    def test_normalize_hex_rejects_invalid(self, value):
        """Test malformed colors are rejected at the boundary"""
        assert not is_valid_hex(value)
        with pytest.raises(ColorValidationError):
            normalize_hex(value)

    def test_hex_rgb_conversion(self):
        """Test round trip between hex and RGB"""
        assert hex_to_rgb("#1F4E79") == (31, 78, 121)
        assert rgb_to_hex(31, 78, 121) == "#1F4E79"
        assert rgb_to_hex(300, -5, 0) == "#FF0000"


class TestHslNormalization:
    """Test grayscale colors never carry NaN hue or saturation"""

    def test_nan_components_become_zero(self):
        hsl = normalize_hsl(float("nan"), float("nan"), 0.5)
        assert hsl == (0.0, 0.0, 0.5)

    def test_hue_wraps(self):
        assert normalize_hsl(370.0, 0.5, 0.5).h == pytest.approx(10.0)

    @pytest.mark.parametrize("hex_color", ["#000000", "#808080", "#FFFFFF"])
    def test_grayscale_samples(self, hex_color):
        sample = ColorSample.from_hex(hex_color)
        assert sample.hsl.h == 0.0
        assert sample.hsl.s == 0.0
        assert sample.is_achromatic

    def test_chromatic_sample(self):
        sample = ColorSample.from_hex("#112233")
        assert sample.hsl.h == pytest.approx(210.0)
        assert sample.hsl.s == pytest.approx(0.5)
        assert not sample.is_achromatic


class TestColorSample:
    """Test the immutable color value type"""

    def test_lab_of_reference_whites(self):
        white = ColorSample.from_hex("#FFFFFF")
        black = ColorSample.from_hex("#000000")
        assert white.lab.L == pytest.approx(100.0, abs=0.01)
        assert white.lab.a == pytest.approx(0.0, abs=0.01)
        assert black.lab.L == pytest.approx(0.0, abs=0.01)

    def test_from_rgb_validates_channels(self):
        with pytest.raises(ColorValidationError):
            ColorSample.from_rgb(256, 0, 0)
        with pytest.raises(ColorValidationError):
            ColorSample.from_rgb(1.5, 0, 0)

    def test_lab_round_trip(self):
        sample = ColorSample.from_hex("#2D7560")
        again = ColorSample.from_lab(*sample.lab)
        assert again.hex == sample.hex

    def test_zero_adjustment_is_identity(self):
        sample = ColorSample.from_hex("#D3B58F")
        assert sample.adjusted(0.0, 0.0, 0.0).hex == sample.hex

    def test_features_are_normalized(self):
        for hex_color in ["#000000", "#FFFFFF", "#FF0000", "#00FF00", "#0000FF"]:
            features = ColorSample.from_hex(hex_color).features()
            assert len(features) == 9
            assert all(-0.01 <= value <= 1.01 for value in features)

    def test_parse_color_rejects_ambiguous_inputs(self):
        sample = ColorSample.from_hex("#123456")
        assert parse_color(sample) is sample
        assert parse_color("#123456") == sample
        with pytest.raises(ColorValidationError):
            parse_color({"r": 18, "g": 52, "b": 86})
        with pytest.raises(ColorValidationError):
            parse_color((18, 52, 86))

    def test_samples_are_immutable(self):
        sample = ColorSample.from_hex("#123456")
        with pytest.raises(AttributeError):
            sample.hex = "#000000"


class TestDistances:
    """Test distance primitives"""

    def test_distance_to_self_is_zero(self):
        sample = ColorSample.from_hex("#1F4E79")
        assert delta_e(sample, sample) == pytest.approx(0.0)
        assert lab_distance(sample, sample) == pytest.approx(0.0)

    def test_delta_e_is_symmetric(self):
        a = ColorSample.from_hex("#112233")
        b = ColorSample.from_hex("#FFFFFF")
        assert delta_e(a, b) == pytest.approx(delta_e(b, a))
        assert delta_e(a, b) > 0

    def test_hue_distance_is_circular(self):
        assert hue_distance(350.0, 10.0) == pytest.approx(20.0 / 180.0)
        assert hue_distance(0.0, 180.0) == pytest.approx(1.0)
        assert hue_distance(90.0, 90.0) == 0.0
