"""
Pytest fixtures for imgcat: small in-memory images and encoded buffers.
"""

import io

import pytest
from PIL import Image

import termctl


def encode(image, fmt, **kwargs):
    buf = io.BytesIO()
    image.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


@pytest.fixture
def rgba_image():
    """4x4 image: opaque red on top, transparent on the bottom."""
    image = Image.new("RGBA", (4, 4), (255, 0, 0, 255))
    for x in range(4):
        for y in range(2, 4):
            image.putpixel((x, y), (0, 0, 0, 0))
    return image


@pytest.fixture
def png_bytes():
    return encode(Image.new("RGB", (10, 6), (10, 20, 30)), "PNG")


@pytest.fixture
def gif_bytes():
    """Three-frame GIF with distinct solid colors."""
    frames = [Image.new("RGB", (8, 8), color) for color in [(255, 0, 0), (0, 255, 0), (0, 0, 255)]]
    return encode(frames[0], "GIF", save_all=True, append_images=frames[1:], duration=66, loop=0)


class FakeTerminal(termctl.Terminal):
    """Terminal double that records echo changes instead of touching a tty."""

    def __init__(self, tty=True, size=(80, 24)):
        self.tty = tty
        self.size = size
        self.saved = 0
        self.applied = 0
        self.restored = 0

    def is_terminal(self, stream=None):
        return self.tty

    def get_size(self):
        if isinstance(self.size, Exception):
            raise self.size
        return self.size

    def _save(self):
        self.saved += 1
        return "token"

    def _apply(self, token):
        self.applied += 1

    def _restore(self, token):
        assert token == "token"
        self.restored += 1


@pytest.fixture
def fake_terminal():
    return FakeTerminal()
