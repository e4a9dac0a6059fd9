"""Shared test fixtures for visual matcher tests."""

import os
import threading

import numpy as np
import cv2
import pytest

from visual_matcher.catalog import CatalogStore
from visual_matcher.embedding import EmbeddingProvider


def make_image(color, size=64):
    """Solid RGB uint8 image of one color."""
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[:, :] = color
    return img


def write_image(directory, filename, color=(200, 30, 30)):
    """Write a solid-color image to disk and return its path."""
    path = os.path.join(str(directory), filename)
    image = cv2.cvtColor(make_image(color), cv2.COLOR_RGB2BGR)
    assert cv2.imwrite(path, image)
    return path


def count_saves(store, monkeypatch):
    """Record each write of `store` to disk; returns the call list."""
    calls = []
    original = store._save

    def counting_save():
        calls.append(1)
        original()

    monkeypatch.setattr(store, "_save", counting_save)
    return calls


class ColorModel:
    """
    Deterministic stand-in for an embedding network.

    Embeds an image as its mean RGB color plus a constant offset, so every
    image gets a non-zero 3-d vector and distinct colors point in
    different directions. Counts calls for idempotence checks.
    """

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, image):
        with self._lock:
            self.calls += 1
        return image.reshape(-1, 3).mean(axis=0) + 10.0


@pytest.fixture
def color_model():
    return ColorModel()


@pytest.fixture
def provider(color_model):
    return EmbeddingProvider(lambda: color_model)


@pytest.fixture
def store():
    return CatalogStore()


@pytest.fixture
def image_dir(tmp_path):
    directory = tmp_path / "products"
    directory.mkdir()
    return directory


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img
