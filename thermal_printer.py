"""
Serial thermal printer driver and command line tool.

Talks to ESC/POS-style receipt printers (DC2 '*' raster command) over a
serial port: text lines, underline toggles and arbitrary images, which are
scaled, dithered, packed and sent in paced chunks.

Every write waits for the host transmit buffer to drain. There is no
timeout: a printer that stops draining blocks the caller indefinitely.
Run on a worker thread if you need to stay responsive.
"""
import argparse
import io
import math
import os
import sys
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Tuple

import serial
from PIL import Image, UnidentifiedImageError

from thermal_image import (
    DIFFUSE_KERNELS, MAX_HEADER_VALUE, MAX_PRINTABLE_WIDTH, PRINTER_WIDTH_PIXELS,
    ImageEncodingError, PackedBitmap, pack, prepare_image,
)

# --- Constants ---
DEFAULT_PORT = "/dev/serial0"
DEFAULT_BAUDRATE = 19200

ESCAPE = 27
DEVICE_CONTROL_2 = 18

MAX_CHUNK_ROWS = 100          # Rows per image command; more overruns the printer's buffer
BYTE_DELAY_SECONDS = 0.00025  # 1/4 ms after every image byte, prevents timing issues
POLL_INTERVAL = 0.0005        # First back-off step while waiting for the buffer to drain
MAX_POLL_INTERVAL = 0.05

SUPPORTED_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp', '.gif')
DEBUG_OUTPUT_DIR = "debug_output"
DITHER_CHOICES = ["none"] + list(DIFFUSE_KERNELS)

DEMO_LINES = ("Hello! This is the Demo of", "thermal-print!")


# --- Transport ---
class Transport(Protocol):
    """Byte stream the printer is attached to."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def write_bytes(self, data: bytes) -> int: ...

    def pending_write_count(self) -> int: ...


class SerialTransport:
    """
    pyserial backed transport (8N1, no flow control).
    port may be a device path (/dev/serial0, COM3) or a pyserial URL
    (socket://, rfc2217://). Avoid loop:// for printing: its out_waiting only
    drops when something reads the loopback, so wait_for_completion blocks.
    Serial errors are not caught here; retrying is up to the caller.
    """

    def __init__(self, port=DEFAULT_PORT, baudrate=DEFAULT_BAUDRATE, timeout=None, write_timeout=None):
        self.port = port
        self.baudrate = baudrate
        self.serial = serial.serial_for_url(
            port,
            do_not_open=True,
            baudrate=baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
            write_timeout=write_timeout,
            xonxoff=False,
            rtscts=False,
            dsrdtr=False,
        )

    @property
    def is_open(self):
        return self.serial.is_open

    def open(self):
        if not self.serial.is_open:
            self.serial.open()

    def close(self):
        if self.serial.is_open:
            self.serial.close()

    def write_bytes(self, data):
        return self.serial.write(bytes(data))

    def pending_write_count(self):
        return self.serial.out_waiting


def wait_for_completion(transport, poll_interval=POLL_INTERVAL, max_interval=MAX_POLL_INTERVAL):
    """
    Blocks until the transport reports nothing pending. Polls with an
    exponential back-off instead of spinning. Never times out: a device
    that does not drain hangs here.
    """
    delay = poll_interval
    while transport.pending_write_count() > 0:
        time.sleep(delay)
        delay = min(delay * 2, max_interval)


# --- Commands ---
def underline_command(weight):
    """ESC '-' n, n = 0 (off), 1 (thin) or 2 (thick)."""
    return bytes([ESCAPE, ord('-'), max(0, min(2, weight))])


def line_command(text):
    """ASCII text, newline terminated (the printer won't print an open line)."""
    if not text.endswith("\n"):
        text += "\n"
    return text.encode("ascii", errors="replace")


# --- Chunked Transmitter ---
@dataclass(frozen=True)
class Chunk:
    """A horizontal band of a PackedBitmap, sent as one DC2 '*' command."""
    rows: int
    width_bytes: int
    data: bytes

    @property
    def header(self):
        return bytes([DEVICE_CONTROL_2, ord('*'), self.rows, self.width_bytes])


def check_header_limits(bitmap, max_rows=MAX_CHUNK_ROWS):
    if not 1 <= max_rows <= MAX_HEADER_VALUE:
        raise ValueError(f"max_rows must be 1..{MAX_HEADER_VALUE}, got {max_rows}")
    if bitmap.width_bytes > MAX_HEADER_VALUE:
        raise ImageEncodingError(
            f"Bitmap rows are {bitmap.width_bytes} bytes wide; the header allows {MAX_HEADER_VALUE}"
        )
    if bitmap.height and bitmap.width_bytes == 0:
        raise ImageEncodingError("Bitmap has rows but no width")


def iter_chunks(bitmap: PackedBitmap, max_rows: int = MAX_CHUNK_ROWS) -> Iterator[Chunk]:
    """Splits a bitmap into bands of at most max_rows rows, top to bottom."""
    check_header_limits(bitmap, max_rows)
    start = 0
    while start < bitmap.height:
        stop = min(start + max_rows, bitmap.height)
        yield Chunk(stop - start, bitmap.width_bytes, bitmap.rows(start, stop))
        start = stop


def send_bitmap(bitmap: PackedBitmap, transport: Transport, byte_delay=BYTE_DELAY_SECONDS,
                max_rows=MAX_CHUNK_ROWS) -> int:
    """
    Sends a packed bitmap as a series of DC2 '*' commands.
    Header first, then the payload one byte per write with byte_delay
    after each. Waits for the transport to drain after the header, after
    every byte and after the chunk. Returns the number of chunks sent.
    """
    check_header_limits(bitmap, max_rows)
    total = math.ceil(bitmap.height / max_rows)
    sent = 0
    for number, chunk in enumerate(iter_chunks(bitmap, max_rows), start=1):
        print(f"Sending chunk {number}/{total}: {chunk.rows} rows x {chunk.width_bytes} bytes")
        transport.write_bytes(chunk.header)
        wait_for_completion(transport)
        for value in chunk.data:
            transport.write_bytes(bytes([value]))
            wait_for_completion(transport)
            time.sleep(byte_delay)
        wait_for_completion(transport)
        sent += 1
    return sent


# --- Printer ---
class ThermalPrinter:
    """
    High level printer commands on top of a Transport.

        with ThermalPrinter(SerialTransport("/dev/serial0", 19200)) as printer:
            printer.write_line("Hello")
            printer.write_image(Image.open("logo.png"))
    """

    def __init__(self, transport, byte_delay=BYTE_DELAY_SECONDS):
        self.transport = transport
        self.byte_delay = byte_delay

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.disconnect()
        else:
            # Don't wait on a printer that may be the reason we failed
            self.transport.close()
        return False

    def connect(self):
        """Opens the connection to the printer."""
        self.transport.open()

    def disconnect(self):
        """Waits until everything has been sent, then closes the connection."""
        self.wait_for_completion()
        self.transport.close()

    def wait_for_completion(self):
        wait_for_completion(self.transport)

    def write_multi_bytes(self, *values):
        """Writes a multi-byte instruction and waits for it to go out."""
        self.transport.write_bytes(bytes(values))
        self.wait_for_completion()

    def write_line(self, text):
        """Writes a line of text (no line breaking); adds the missing newline."""
        self.transport.write_bytes(line_command(text))
        self.wait_for_completion()

    def underline_on(self):
        self.write_multi_bytes(*underline_command(2))

    def underline_off(self):
        self.write_multi_bytes(*underline_command(0))

    def write_bitmap(self, bitmap):
        chunks = send_bitmap(bitmap, self.transport, byte_delay=self.byte_delay)
        self.wait_for_completion()
        return chunks

    def write_binary_image(self, img):
        """Prints an already dithered image. Only pure black reaches the paper."""
        bitmap = pack(img)
        chunks = self.write_bitmap(bitmap)
        print(f"Image is {bitmap.width_bytes} bytes wide (for {img.width}px), {bitmap.height}px high, {chunks} chunk(s).")
        return bitmap

    def write_image(self, image, dither_mode="fs", threshold_opt="auto",
                    max_width=PRINTER_WIDTH_PIXELS, upside_down=False):
        """
        Prints an arbitrary image: scaled down to max_width if wider,
        converted to grayscale and dithered (Floyd-Steinberg by default).
        """
        img = prepare_image(image, max_width, dither_mode, threshold_opt, upside_down)
        return self.write_binary_image(img)


# --- Image Loading ---
def load_image(source):
    """Opens an image from a file path or an http(s) URL."""
    if str(source).lower().startswith(("http://", "https://")):
        print(f"Downloading image: {source}")
        with urllib.request.urlopen(source, timeout=30) as response:
            data = response.read()
        img = Image.open(io.BytesIO(data))
    else:
        path = Path(source)
        if not path.is_file():
            raise FileNotFoundError(f"Image not found: {path}")
        img = Image.open(path)
    img.load()
    return img


# --- Script Logic ---
def parse_threshold(value):
    if str(value).lower() == "auto":
        return "auto"
    level = int(value)
    if not 0 <= level <= 255:
        raise ValueError(f"threshold must be 0-255 or 'auto', got {value}")
    return level


def validate_args(args):
    """Checks for conflicting or missing command line arguments."""
    if not (args.image or args.folder or args.text or args.demo):
        print("Error: No action specified. Use -i, -f, -t or --demo.")
        return False

    if args.underline and not args.text:
        print("Error: -U/--underline needs text to underline (-t).")
        return False

    if not 1 <= args.max_width <= MAX_PRINTABLE_WIDTH:
        print(f"Error: --max-width must be 1..{MAX_PRINTABLE_WIDTH}.")
        return False

    try:
        args.threshold = parse_threshold(args.threshold)
    except ValueError as e:
        print(f"Error: {e}")
        return False

    return True


def prepare_print_jobs(args) -> List[Tuple[Image.Image, str]]:
    """Prepares a list of (1-bit image, description) tuples based on arguments."""
    jobs = []

    def _prepare(source):
        raw = load_image(source)
        img = prepare_image(raw, args.max_width, args.dither, args.threshold, args.upside_down)
        if args.upside_down:
            print("Rotating image 180 degrees.")
        return img

    if args.image:
        jobs.append((_prepare(args.image), os.path.basename(str(args.image).rstrip("/"))))

    if args.folder:
        if not os.path.isdir(args.folder):
            raise FileNotFoundError(f"Folder not found: {args.folder}")
        print(f"Scanning folder: {args.folder}")
        file_list = sorted(f for f in os.listdir(args.folder) if f.lower().endswith(SUPPORTED_EXTENSIONS))
        if not file_list:
            print(f"No supported image files found in '{args.folder}'.")
        for filename in file_list:
            try:
                jobs.append((_prepare(os.path.join(args.folder, filename)), filename))
            except (OSError, UnidentifiedImageError) as e:
                print(f"Warning: skipping '{filename}': {e}")

    return jobs


def save_debug_images(jobs, outdir=DEBUG_OUTPUT_DIR):
    """Saves prepared bitmaps instead of printing them. Returns the written paths."""
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    saved = []
    for i, (img, desc) in enumerate(jobs):
        stem = os.path.splitext(desc)[0]
        safe_desc = "".join(c if c.isalnum() or c in ('_', '-') else '_' for c in stem).strip('_-')[:40]
        path = outdir / f"debug_{i:02d}_{safe_desc or 'image'}.png"
        img.save(path)
        print(f"  Saved: {path}")
        saved.append(path)
    return saved


def print_text(printer, text, underline=False):
    """
    Prints text line by line. A literal backslash-n (as typed in a shell)
    also starts a new line; one trailing newline does not add a blank line.
    """
    text = text.replace("\\n", "\n")
    if text.endswith("\n"):
        text = text[:-1]
    if underline:
        printer.underline_on()
    for line in text.split("\n"):
        printer.write_line(line)
    if underline:
        printer.underline_off()


def run_demo(printer, jobs):
    """Greeting, underlined title, blank line, then any prepared images."""
    printer.write_line(DEMO_LINES[0])
    printer.underline_on()
    printer.write_line(DEMO_LINES[1])
    printer.underline_off()
    printer.write_line("")
    for img, desc in jobs:
        print(f"Printing demo image: {desc}")
        printer.write_binary_image(img)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="thermal-print",
        description="Print text or images on a serial thermal receipt printer (DC2 '*' bitmaps).",
    )
    # Print Content Arguments
    parser.add_argument("-i", "--image", help="Image file or http(s) URL to print.")
    parser.add_argument("-f", "--folder", help="Print every supported image in this folder.")
    parser.add_argument("-t", "--text", help="Text to print before any images. A newline or a typed \\n starts a new line.")
    parser.add_argument("-U", "--underline", action="store_true", help="Underline the text given with -t.")
    parser.add_argument("--demo", action="store_true", help="Print the demo greeting (plus any images given).")
    # Connection
    parser.add_argument("-P", "--port", default=DEFAULT_PORT, help=f"Serial port or pyserial URL (default: {DEFAULT_PORT})")
    parser.add_argument("-b", "--baud", type=int, default=DEFAULT_BAUDRATE, help=f"Baud rate (default: {DEFAULT_BAUDRATE})")
    # Image Options
    parser.add_argument("--dither", choices=DITHER_CHOICES, default="fs", help="1-bit conversion method (default: fs)")
    parser.add_argument("--threshold", default="auto", help="0-255 or 'auto' (Otsu) when --dither=none")
    parser.add_argument("--max-width", type=int, default=PRINTER_WIDTH_PIXELS,
                        help=f"Scale wider images down to this many pixels (default: {PRINTER_WIDTH_PIXELS})")
    parser.add_argument("-u", "--upside-down", action="store_true", help="Rotate images 180 degrees.")
    parser.add_argument("-s", "--debug-save", action="store_true",
                        help=f"Save prepared bitmaps to '{DEBUG_OUTPUT_DIR}/' instead of printing.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main orchestration function. Returns the process exit status."""
    args = build_parser().parse_args(argv)

    # 1. Validate Arguments
    if not validate_args(args):
        return 1

    # 2. Prepare Image Jobs
    try:
        jobs = prepare_print_jobs(args)
    except (OSError, UnidentifiedImageError, urllib.error.URLError, ImageEncodingError) as e:
        print(f"Error: {e}")
        return 1
    if (args.image or args.folder) and not jobs:
        print("Error: No valid images could be prepared.")
        return 1
    if jobs:
        print(f"Prepared {len(jobs)} image job(s).")

    # 3. Debug Save (no printer needed)
    if args.debug_save:
        print("--- Debug Save Mode ---")
        try:
            save_debug_images(jobs)
        except OSError as e:
            print(f"Error: could not save debug images: {e}")
            return 1
        return 0

    # 4. Connect and Print
    print(f"Connecting to printer on {args.port} @ {args.baud} baud...")
    try:
        with ThermalPrinter(SerialTransport(args.port, args.baud)) as printer:
            if args.demo:
                run_demo(printer, jobs)
            else:
                if args.text:
                    print_text(printer, args.text, underline=args.underline)
                for i, (img, desc) in enumerate(jobs, start=1):
                    print(f"\n--- Starting Print Job {i}/{len(jobs)}: {desc} ---")
                    printer.write_binary_image(img)
    except serial.SerialException as e:
        print(f"Serial Error: {e}")
        return 1
    except ImageEncodingError as e:
        print(f"Error: {e}")
        return 1

    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
