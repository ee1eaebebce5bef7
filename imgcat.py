#!/usr/bin/env python3
"""
imgcat
Display images and animated GIFs in a truecolor terminal using half-block characters.
"""

import argparse
import io
import logging
import os
import signal
import struct
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import nullcontext
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple

from PIL import Image, ImageSequence, UnidentifiedImageError

import termctl

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# Layout
DEFAULT_TOP_OFFSET = 8
RESIZE_FACTOR_X = 1
RESIZE_FACTOR_Y = 2
FPS = 15
NUM_ADDITIONAL_LINES = 2
EXIT_HINT = "\npress `ctrl c` to exit\n"

# ANSI escape codes
ANSI_CURSOR_UP = "\x1b[{}A"
ANSI_CURSOR_HIDE = "\x1b[?25l"
ANSI_CURSOR_SHOW = "\x1b[?25h"
ANSI_BG_TRANSPARENT_COLOR = "\x1b[0;39;49m"
ANSI_BG_RGB_COLOR = "\x1b[48;2;{};{};{}m"
ANSI_FG_TRANSPARENT_COLOR = "\x1b[0m "
ANSI_FG_RGB_COLOR = "\x1b[38;2;{};{};{}m▄"
ANSI_RESET = "\x1b[0m"

ALPHA_THRESHOLD = 128

INTERPOLATIONS = {
    "nearest": Image.NEAREST,
    "box": Image.BOX,
    "bilinear": Image.BILINEAR,
    "hamming": Image.HAMMING,
    "bicubic": Image.BICUBIC,
    "lanczos": Image.LANCZOS,
}

RESIZE_TYPES = ["fit"]

# Magic bytes -> format name
MAGIC_NUMBERS = [
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"BM", "bmp"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
    (b"\x00\x00\x01\x00", "ico"),
]

ANIMATED_FORMATS = {"gif"}

# Everything Pillow raises on malformed or truncated data
DECODE_ERRORS = (
    UnidentifiedImageError,
    OSError,
    ValueError,
    EOFError,
    SyntaxError,
    IndexError,
    struct.error,
    Image.DecompressionBombError,
)


# Errors
class ImgcatError(Exception):
    """Base error; `stage` names the pipeline step that failed."""

    stage = "imgcat"


class InputError(ImgcatError):
    stage = "input"


class DecodeError(ImgcatError):
    stage = "decode"


class TerminalError(ImgcatError):
    stage = "terminal"


def format_error(err: BaseException) -> str:
    """Join an exception and its causes into one line."""
    parts = []
    while err is not None:
        message = str(err) or type(err).__name__
        if message not in parts:
            parts.append(message)
        err = err.__cause__
    return ": ".join(parts)


@dataclass(frozen=True)
class RasterFrame:
    """One decoded RGBA frame. Never mutated once built."""

    image: Image.Image

    @classmethod
    def from_image(cls, image: Image.Image) -> "RasterFrame":
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return cls(image)

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def dimensions(self) -> Tuple[int, int]:
        return self.image.size

    def get_pixel_rgba(self, x: int, y: int) -> Tuple[int, int, int, int]:
        return self.image.getpixel((x, y))


class TerminalGeometry(NamedTuple):
    columns: int
    rows: int


FALLBACK_GEOMETRY = TerminalGeometry(*termctl.DEFAULT_TERM_SIZE)


@dataclass
class RenderOptions:
    interpolation: str = "lanczos"
    resize_type: str = "fit"
    top_offset: int = DEFAULT_TOP_OFFSET
    silent: bool = False


# Input
def read_input(path: Optional[str] = None, stdin=None) -> bytes:
    """Read raw image bytes from a file, or from stdin when no path is given."""
    if path is not None:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise InputError(f"failed to read file: {path}") from e

    stdin = stdin if stdin is not None else sys.stdin
    if stdin is None:
        raise InputError("stdin is not available")
    if stdin.isatty():
        raise InputError("no input file given and stdin is a terminal")
    try:
        return getattr(stdin, "buffer", stdin).read()
    except (OSError, ValueError) as e:
        raise InputError("failed to read from stdin") from e


# Decoding
def guess_format(buf: bytes) -> Optional[str]:
    """Classify an encoded image by its leading magic bytes."""
    for magic, name in MAGIC_NUMBERS:
        if buf.startswith(magic):
            return name
    if len(buf) >= 12 and buf[:4] == b"RIFF" and buf[8:12] == b"WEBP":
        return "webp"
    return None


def decode_image(buf: bytes) -> List[RasterFrame]:
    """Decode a buffer into an ordered, non-empty list of frames."""
    fmt = guess_format(buf)
    logger.debug("Detected format: %s (%d bytes)", fmt or "unknown", len(buf))
    if fmt in ANIMATED_FORMATS:
        return decode_animation(buf)
    return decode_static_image(buf)


def decode_animation(buf: bytes) -> List[RasterFrame]:
    """Decode every frame of an animated GIF as a full-canvas RGBA raster."""
    frames = []
    try:
        with Image.open(io.BytesIO(buf)) as img:
            for frame in ImageSequence.Iterator(img):
                frames.append(RasterFrame.from_image(frame.convert("RGBA")))
    except DECODE_ERRORS as e:
        raise DecodeError("failed to decode GIF") from e

    if not frames:
        raise DecodeError("no frames found in GIF")

    logger.debug("Decoded %d animation frames", len(frames))
    return frames


def decode_static_image(buf: bytes) -> List[RasterFrame]:
    """Decode a single still image; rejects images too small to fill one line."""
    try:
        with Image.open(io.BytesIO(buf)) as img:
            img.load()
            frame = RasterFrame.from_image(img)
    except DECODE_ERRORS as e:
        raise DecodeError("failed to decode image") from e

    width, height = frame.dimensions()
    if width < 2 or height < 2:
        raise DecodeError(f"the input image is too small ({width}x{height})")

    return [frame]


# Scaling
def get_terminal_geometry(terminal: Optional[termctl.Terminal] = None, stream=None) -> TerminalGeometry:
    """Detect terminal columns and rows, falling back to 80x24 off-terminal."""
    terminal = terminal if terminal is not None else termctl.get_terminal()
    if not terminal.is_terminal(stream):
        return FALLBACK_GEOMETRY
    try:
        columns, rows = terminal.get_size()
    except (OSError, ValueError) as e:
        logger.debug("Terminal size query failed, using fallback: %s", e)
        return FALLBACK_GEOMETRY
    if columns <= 0 or rows <= 0:
        return FALLBACK_GEOMETRY
    return TerminalGeometry(columns, rows)


def target_box(geometry: TerminalGeometry, top_offset: int = DEFAULT_TOP_OFFSET) -> Tuple[int, int]:
    """Pixel box available for the image: two pixel rows per text row."""
    width = max(1, geometry.columns * RESIZE_FACTOR_X)
    height = max(RESIZE_FACTOR_Y, (geometry.rows - top_offset) * RESIZE_FACTOR_Y)
    return width, height


def fit_size(size: Tuple[int, int], box: Tuple[int, int]) -> Tuple[int, int]:
    """Largest size with the same aspect ratio as `size` that fits inside `box`."""
    orig_width, orig_height = size
    box_width, box_height = box

    aspect_ratio = orig_width / orig_height
    target_aspect_ratio = box_width / box_height

    if aspect_ratio > target_aspect_ratio:
        new_width = box_width
        new_height = int(box_width / aspect_ratio)
    else:
        new_width = int(box_height * aspect_ratio)
        new_height = box_height

    return max(1, min(new_width, box_width)), max(1, min(new_height, box_height))


def scale_frames(
    frames: Sequence[RasterFrame],
    geometry: TerminalGeometry,
    top_offset: int = DEFAULT_TOP_OFFSET,
    interpolation: str = "lanczos",
    resize_type: str = "fit",
) -> List[RasterFrame]:
    """Resize every frame to fit the terminal, each by its own aspect ratio."""
    if interpolation not in INTERPOLATIONS:
        raise ValueError(f"unknown interpolation method: {interpolation}")
    if resize_type not in RESIZE_TYPES:
        raise ValueError(f"unknown resize type: {resize_type}")

    resample = INTERPOLATIONS[interpolation]
    box = target_box(geometry, top_offset)
    logger.debug("Target box %dx%d for terminal %dx%d", box[0], box[1], geometry.columns, geometry.rows)

    scaled_frames = []
    for frame in frames:
        new_size = fit_size(frame.dimensions(), box)
        scaled_frames.append(RasterFrame(frame.image.resize(new_size, resample)))
    return scaled_frames


# Encoding
def escape_row_pair(frame: RasterFrame, y: int) -> str:
    """Encode pixel rows y and y+1 as one line of half-block cells."""
    parts = []
    for x in range(frame.width):
        # Upper pixel (background)
        r, g, b, a = frame.get_pixel_rgba(x, y)
        if a < ALPHA_THRESHOLD:
            parts.append(ANSI_BG_TRANSPARENT_COLOR)
        else:
            parts.append(ANSI_BG_RGB_COLOR.format(r, g, b))

        # Lower pixel (foreground)
        r, g, b, a = frame.get_pixel_rgba(x, y + 1)
        if a < ALPHA_THRESHOLD:
            parts.append(ANSI_FG_TRANSPARENT_COLOR)
        else:
            parts.append(ANSI_FG_RGB_COLOR.format(r, g, b))

    parts.append(ANSI_RESET)
    parts.append("\n")
    return "".join(parts)


def default_workers() -> int:
    return min(os.cpu_count() or 4, 8)


def escape_frame(
    frame: RasterFrame,
    max_workers: Optional[int] = None,
    executor: Optional[ThreadPoolExecutor] = None,
) -> List[str]:
    """Encode a frame, one parallel task per row-pair, reassembled by row index.

    Uses `executor` when given, otherwise a pool of its own.
    """
    max_y = frame.height - (frame.height % 2)
    lines = [""] * (max_y // 2)
    if not lines:
        return lines

    if executor is None:
        with ThreadPoolExecutor(max_workers=max_workers or default_workers()) as own_executor:
            return escape_frame(frame, executor=own_executor)

    futures = {executor.submit(escape_row_pair, frame, y): y // 2 for y in range(0, max_y, 2)}

    # Completion order is arbitrary; the index keeps lines top-to-bottom
    for future in as_completed(futures):
        lines[futures[future]] = future.result()

    return lines


def escape_frames(frames: Sequence[RasterFrame], max_workers: Optional[int] = None) -> List[List[str]]:
    """Encode every frame in playback order on one shared worker pool."""
    workers = max_workers or default_workers()
    logger.debug("Encoding %d frame(s) with %d workers", len(frames), workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return [escape_frame(frame, executor=executor) for frame in frames]


# Playback
class StopFlag:
    """Cancellation flag shared between the SIGINT handler and the playback loop."""

    def __init__(self):
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()


def install_interrupt_handler(flag: StopFlag):
    """Route SIGINT to `flag.stop()`. Returns the handler it replaced."""

    def _handle_sigint(signum, frame):
        flag.stop()

    try:
        return signal.signal(signal.SIGINT, _handle_sigint)
    except (ValueError, OSError) as e:
        raise TerminalError("failed to install the interrupt handler") from e


def restore_interrupt_handler(previous) -> None:
    if previous is None:
        return
    try:
        signal.signal(signal.SIGINT, previous)
    except (ValueError, OSError) as e:
        logger.debug("Could not reinstate the previous SIGINT handler: %s", e)


def print_frames(
    frames: Sequence[Sequence[str]],
    silent: bool = False,
    out=None,
    terminal: Optional[termctl.Terminal] = None,
    fps: int = FPS,
    sleep=time.sleep,
    flag: Optional[StopFlag] = None,
) -> None:
    """Write encoded frames to the terminal; loops animations until interrupted."""
    out = out if out is not None else sys.stdout
    terminal = terminal if terminal is not None else termctl.get_terminal()

    echo_guard = terminal.disable_echo() if terminal.is_terminal(out) else nullcontext()
    with echo_guard:
        try:
            out.write(ANSI_CURSOR_HIDE)
            out.write("\n")

            if len(frames) == 1:
                out.write("".join(frames[0]))
            else:
                _play_animation(frames, silent, out, fps, sleep, flag or StopFlag())
        finally:
            out.write(ANSI_RESET)
            out.write(ANSI_CURSOR_SHOW)
            out.flush()


def _play_animation(frames, silent, out, fps, sleep, flag):
    previous_handler = install_interrupt_handler(flag)
    try:
        frame_count = len(frames)
        frame_duration = 1.0 / fps
        height = len(frames[0]) + (0 if silent else NUM_ADDITIONAL_LINES)

        i = 0
        first = True
        while flag.running:
            if not first:
                out.write(ANSI_CURSOR_UP.format(height))
            first = False

            out.write("".join(frames[i]))

            if not silent:
                out.write(EXIT_HINT)
            out.flush()

            sleep(frame_duration)
            i = (i + 1) % frame_count
    finally:
        restore_interrupt_handler(previous_handler)


# Command line
def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be zero or greater: {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imgcat",
        description="Display images and gifs in your terminal emulator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("input", nargs="?", help="Input image file (reads from stdin if omitted)")
    parser.add_argument("--interpolation", choices=list(INTERPOLATIONS.keys()), default="lanczos",
                        help="Interpolation method")
    parser.add_argument("--silent", action="store_true", help="Hide exit message")
    parser.add_argument("--resize-type", choices=RESIZE_TYPES, default="fit", help="Image resize type")
    parser.add_argument("--top-offset", type=non_negative_int, default=DEFAULT_TOP_OFFSET,
                        help="Offset from the top of the terminal to start rendering the image")
    parser.add_argument("--verbose", action="store_true", help="Print debug logging to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def render(path: Optional[str], options: RenderOptions, terminal: Optional[termctl.Terminal] = None, out=None) -> None:
    """Run the whole pipeline: bytes -> frames -> scaled frames -> lines -> terminal."""
    terminal = terminal if terminal is not None else termctl.get_terminal()

    data = read_input(path)
    logger.debug("Read %d bytes from %s", len(data), path or "stdin")

    frames = decode_image(data)
    geometry = get_terminal_geometry(terminal, out)
    scaled_frames = scale_frames(
        frames, geometry, options.top_offset, options.interpolation, options.resize_type
    )
    escaped_frames = escape_frames(scaled_frames)

    print_frames(escaped_frames, options.silent, out=out, terminal=terminal)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function for imgcat."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(encoding="utf-8")
        except (ValueError, OSError) as e:
            logger.debug("Could not switch stdout to UTF-8: %s", e)

    options = RenderOptions(
        interpolation=args.interpolation,
        resize_type=args.resize_type,
        top_offset=args.top_offset,
        silent=args.silent,
    )

    try:
        render(args.input, options)
    except ImgcatError as e:
        print(f"Error: {e.stage}: {format_error(e)}", file=sys.stderr)
        return 1
    except OSError as e:
        # Failed write to stdout; input errors arrive wrapped as InputError
        print(f"Error: output: {format_error(e)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
