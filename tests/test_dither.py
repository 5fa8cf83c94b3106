import pytest
from PIL import Image

from thermal_image import DIFFUSE_KERNELS, dither, otsu_threshold, threshold, to_1bit


def black_fraction(img):
    pixels = img.convert("L").tobytes()
    return sum(1 for p in pixels if p == 0) / len(pixels)


@pytest.mark.parametrize("size", [(1, 1), (7, 3), (64, 64), (385, 2)])
def test_dimensions_are_kept(size):
    out = dither(Image.new("L", size, 100))
    assert out.mode == "1"
    assert out.size == size


@pytest.mark.parametrize("level, expected", [(128, 0.5), (64, 0.75), (192, 0.25)])
def test_ink_follows_luminance(level, expected):
    out = dither(Image.new("L", (64, 64), level))
    assert abs(black_fraction(out) - expected) < 0.05


def test_solid_black_and_white_stay_solid():
    assert black_fraction(dither(Image.new("L", (16, 16), 0))) == 1.0
    assert black_fraction(dither(Image.new("L", (16, 16), 255))) == 0.0


def test_quantization_boundary():
    assert dither(Image.new("L", (1, 1), 127)).getpixel((0, 0)) == 0
    assert dither(Image.new("L", (1, 1), 128)).getpixel((0, 0)) == 255


def test_error_goes_to_the_right_neighbour():
    img = Image.new("L", (2, 1), 100)
    out = dither(img)
    # 100 -> black, +100*7/16 pushes the next pixel to 143.75 -> white
    assert out.getpixel((0, 0)) == 0
    assert out.getpixel((1, 0)) == 255


def test_error_goes_to_the_row_below():
    img = Image.new("L", (1, 2), 100)
    out = dither(img)
    # Only the 5/16 share lands in bounds: 100 + 31.25 -> white
    assert out.getpixel((0, 0)) == 0
    assert out.getpixel((0, 1)) == 255


def test_is_deterministic_and_leaves_input_alone():
    img = Image.new("L", (32, 32))
    img.putdata([(x * 37 + y * 11) % 256 for y in range(32) for x in range(32)])
    before = img.tobytes()
    first = dither(img)
    second = dither(img)
    assert first.tobytes() == second.tobytes()
    assert img.tobytes() == before


def test_rgb_input_is_converted_first():
    out = dither(Image.new("RGB", (8, 8), (0, 0, 0)))
    assert black_fraction(out) == 1.0


@pytest.mark.parametrize("kernel", sorted(DIFFUSE_KERNELS))
def test_all_kernels_produce_binary_images(kernel):
    out = dither(Image.new("L", (40, 20), 128), kernel=kernel)
    assert out.size == (40, 20)
    assert 0.3 < black_fraction(out) < 0.7


def test_unknown_kernel():
    with pytest.raises(ValueError):
        dither(Image.new("L", (4, 4)), kernel="bayer16")


def bimodal_image():
    img = Image.new("L", (20, 10), 20)
    img.paste(220, (10, 0, 20, 10))
    return img


def test_otsu_splits_two_tones():
    img = bimodal_image()
    level = otsu_threshold(img)
    assert 20 < level <= 220
    assert black_fraction(threshold(img, level)) == 0.5


def test_threshold_mode():
    img = Image.new("L", (4, 1))
    img.putdata([0, 99, 100, 255])
    out = to_1bit(img, "none", 100)
    assert list(out.convert("L").tobytes()) == [0, 0, 255, 255]
    assert black_fraction(to_1bit(bimodal_image(), "none", "auto")) == 0.5


def test_dither_raises_no_deprecation_warnings(recwarn):
    dither(Image.new("L", (16, 16), 100))
    assert not [w for w in recwarn if issubclass(w.category, DeprecationWarning)]
