"""
Image pipeline for serial thermal printers (DC2 '*' bitmap protocol).

Every stage takes a Pillow image and hands back a new one, so the caller
keeps its original untouched:

    scale -> grayscale -> dither -> pack

The packed result is a PackedBitmap, ready for chunked transmission.
"""
from dataclasses import dataclass

from PIL import Image

# --- Constants ---
PRINTER_WIDTH_PIXELS = 384  # Print head width of the reference printer
MAX_HEADER_VALUE = 255      # Height/width fields of the bitmap header are single bytes
MAX_PRINTABLE_WIDTH = MAX_HEADER_VALUE * 8
BLACK_LEVEL = 128           # Gray values below this quantize to black


class ImageEncodingError(ValueError):
    """The image can not be expressed in the printer's bitmap header."""


# --- Pixel Classifier ---
def _flatten(image):
    """Composite images with transparency over white (transparent must not print)."""
    has_alpha = image.mode in ('RGBA', 'LA', 'PA') or (image.mode == 'P' and 'transparency' in image.info)
    if not has_alpha:
        return image
    rgba = image.convert('RGBA')
    background = Image.new('RGBA', rgba.size, (255, 255, 255, 255))
    return Image.alpha_composite(background, rgba).convert('RGB')


def _to_8bit(image):
    """
    Rescales 16-bit and float images ('I;16*', 'I', 'F') into an 8-bit 'L'
    image. Pillow's own convert('L') clips those values instead of scaling,
    which turns nearly everything white. Other modes are returned as-is.
    """
    if image.mode.startswith('I;16'):
        return image.convert('I').point(lambda v: v * (1 / 256)).convert('L')
    if image.mode not in ('I', 'F'):
        return image

    extrema = image.getextrema()
    hi = extrema[1] if extrema else 0
    if image.mode == 'F' and 0 < hi <= 1.0:
        factor = 255.0  # normalized float data
    elif hi <= 255:
        factor = 1.0
    elif hi <= 65535:
        factor = 1 / 256  # 16-bit samples widened to 'I' (older Pillow PNG loader)
    else:
        factor = 255.0 / hi
    return image.convert('F').point(lambda v: v * factor).convert('L')


def grayscale(image):
    """Returns a new 8-bit 'L' image using the ITU-R 601 luma weights."""
    if image.mode == 'L':
        return image.copy()
    return _to_8bit(_flatten(image)).convert('L')


def is_black(color):
    """
    True only for pure black. Alpha is ignored; any other value,
    near-black grays included, counts as white (paper).
    color: int (gray/palette value) or a tuple of 1-4 channels.
    """
    if isinstance(color, int):
        return color == 0
    channels = tuple(color)
    if len(channels) <= 2:  # L or LA
        return channels[0] == 0
    return channels[0] == 0 and channels[1] == 0 and channels[2] == 0


# --- Scaler ---
def scale(image, max_width=PRINTER_WIDTH_PIXELS):
    """
    Downsamples images wider than max_width, keeping the aspect ratio.
    Narrow enough images are returned as-is (same object).
    """
    if max_width < 1:
        raise ValueError(f"max_width must be positive, got {max_width}")
    if image.width <= max_width:
        return image

    print("Image required scaling.")
    new_height = max(1, int(round(image.height * max_width / image.width)))
    src = _to_8bit(_flatten(image))
    if src.mode not in ('RGB', 'L'):
        src = src.convert('RGB')
    # BOX is Pillow's area-averaging filter
    return src.resize((max_width, new_height), Image.BOX)


# --- Ditherer ---
# Error-diffusion kernels: (dx, dy, weight), weights are divided by 'div'
DIFFUSE_KERNELS = {
    # Floyd–Steinberg (reference)
    "fs": {"div": 16, "weights": [(1, 0, 7), (-1, 1, 3), (0, 1, 5), (1, 1, 1)]},

    # Atkinson (Apple), drops 1/4 of the error for more contrast
    "atkinson": {"div": 8, "weights": [
        (1, 0, 1), (2, 0, 1),
        (-1, 1, 1), (0, 1, 1), (1, 1, 1),
        (0, 2, 1)
    ]},

    # Jarvis–Judice–Ninke
    "jarvis": {"div": 48, "weights": [
        (1, 0, 7), (2, 0, 5),
        (-2, 1, 3), (-1, 1, 5), (0, 1, 7), (1, 1, 5), (2, 1, 3),
        (-2, 2, 1), (-1, 2, 3), (0, 2, 5), (1, 2, 3), (2, 2, 1)
    ]},

    # Stucki
    "stucki": {"div": 42, "weights": [
        (1, 0, 8), (2, 0, 4),
        (-2, 1, 2), (-1, 1, 4), (0, 1, 8), (1, 1, 4), (2, 1, 2),
        (-2, 2, 1), (-1, 2, 2), (0, 2, 4), (1, 2, 2), (2, 2, 1)
    ]},

    # Burkes
    "burkes": {"div": 32, "weights": [
        (1, 0, 8), (2, 0, 4),
        (-2, 1, 2), (-1, 1, 4), (0, 1, 8), (1, 1, 4), (2, 1, 2)
    ]},

    # Sierra Lite
    "sierra-lite": {"div": 4, "weights": [
        (1, 0, 2), (-1, 1, 1), (0, 1, 1)
    ]},
}


def dither(imgL, kernel="fs"):
    """
    Error-diffusion dithering of an 8-bit 'L' image into a 1-bit image.
    Scans in raster order (left to right, top to bottom). The quantization
    error is carried as floats; contributions that fall outside the image
    are dropped. Deterministic.
    """
    if kernel not in DIFFUSE_KERNELS:
        raise ValueError(f"Unknown dither kernel '{kernel}'. Choose from: {', '.join(DIFFUSE_KERNELS)}")
    if imgL.mode != 'L':
        imgL = grayscale(imgL)

    w, h = imgL.size
    weights = DIFFUSE_KERNELS[kernel]["weights"]
    div = float(DIFFUSE_KERNELS[kernel]["div"])
    buf = [float(v) for v in imgL.tobytes()]
    levels = bytearray(w * h)

    for y in range(h):
        row = y * w
        for x in range(w):
            i = row + x
            old = buf[i]
            new = 0 if old < BLACK_LEVEL else 255
            levels[i] = new
            err = old - new
            if not err:
                continue
            for dx, dy, wgt in weights:
                nx = x + dx
                ny = y + dy
                if 0 <= nx < w and ny < h:
                    buf[ny * w + nx] += err * wgt / div

    out = Image.new('1', (w, h), 1)
    out.putdata(levels)
    return out


def otsu_threshold(imgL):
    """
    Otsu's method. Returns the lowest gray value of the bright class, so
    threshold(imgL, otsu_threshold(imgL)) splits the two classes.
    """
    hist = imgL.histogram()[:256]
    total = sum(hist)
    sum_all = sum(i * hist[i] for i in range(256))
    sum_back = weight_back = 0.0
    var_max = -1.0
    level = BLACK_LEVEL
    for t in range(256):
        weight_back += hist[t]
        if weight_back == 0:
            continue
        weight_fore = total - weight_back
        if weight_fore == 0:
            break
        sum_back += t * hist[t]
        mean_back = sum_back / weight_back
        mean_fore = (sum_all - sum_back) / weight_fore
        var_between = weight_back * weight_fore * (mean_back - mean_fore) ** 2
        if var_between > var_max:
            var_max = var_between
            level = t + 1
    return level


def threshold(imgL, level=BLACK_LEVEL):
    """Plain threshold without dithering: values below level become black."""
    if imgL.mode != 'L':
        imgL = grayscale(imgL)
    level = max(0, min(255, int(level)))
    return imgL.point(lambda p: 255 if p >= level else 0, mode='1')


def to_1bit(imgL, dither_mode="fs", threshold_opt="auto"):
    mode = (dither_mode or "fs").lower()
    if mode == "none":
        if str(threshold_opt).lower() == "auto":
            level = otsu_threshold(imgL)
        else:
            level = int(threshold_opt)
        return threshold(imgL, level)
    return dither(imgL, kernel=mode)


def prepare_image(image, max_width=PRINTER_WIDTH_PIXELS, dither_mode="fs", threshold_opt="auto", upside_down=False):
    """Runs the full pipeline up to the 1-bit image: scale, grayscale, dither."""
    printable = scale(image, max_width)
    img = to_1bit(grayscale(printable), dither_mode, threshold_opt)
    if upside_down:
        img = img.rotate(180)
    return img


# --- Bitmap Packer ---
@dataclass(frozen=True)
class PackedBitmap:
    """
    Printer-ready bitmap: rows of width_bytes bytes, MSB = leftmost pixel,
    a set bit is a black dot. Padding bits at the end of a row are zero.
    """
    width_bytes: int
    height: int
    data: bytes

    def __post_init__(self):
        if self.width_bytes < 0 or self.height < 0:
            raise ValueError("Bitmap dimensions must not be negative")
        if len(self.data) != self.width_bytes * self.height:
            raise ValueError(
                f"Bitmap data is {len(self.data)} bytes, expected {self.width_bytes} x {self.height}"
            )

    def rows(self, start, stop):
        """Raw bytes of rows [start, stop)."""
        return self.data[start * self.width_bytes:stop * self.width_bytes]

    def is_set(self, x, y):
        byte = self.data[y * self.width_bytes + x // 8]
        return bool(byte & (0x80 >> (x % 8)))


def check_printable(width, height):
    """Rejects sizes the single-byte bitmap header can not describe."""
    if width < 1:
        raise ImageEncodingError(f"Image has no width ({width}x{height})")
    width_bytes = (width + 7) // 8
    if width_bytes > MAX_HEADER_VALUE:
        raise ImageEncodingError(
            f"Image is {width}px wide ({width_bytes} bytes per row); "
            f"the printer header allows at most {MAX_PRINTABLE_WIDTH}px. Scale it first."
        )


def pack(img):
    """
    Converts a 1-bit image into the printer's row format.
    Only pure black pixels (see is_black) set a bit.
    """
    width, height = img.size
    check_printable(width, height)
    width_bytes = (width + 7) // 8
    out = bytearray()
    if height == 0:
        return PackedBitmap(width_bytes, 0, bytes(out))

    pixels = img.convert('RGB').load()
    for y in range(height):
        for byte_index in range(width_bytes):
            value = 0
            for bit in range(8):
                x = byte_index * 8 + bit
                if x < width and is_black(pixels[x, y]):
                    value |= 0x80 >> bit
            out.append(value)
    return PackedBitmap(width_bytes, height, bytes(out))
