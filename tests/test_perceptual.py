"""Tests for local perceptual similarity."""

import numpy as np
import pytest
from PIL import Image

from dedup_guard.core.cancellation import CancellationToken
from dedup_guard.core.perceptual import (
    PerceptualEngine,
    average_hash,
    color_histogram,
    hash_similarity,
    histogram_similarity,
    structural_similarity,
)


class TestAverageHash:
    """Test the average hash."""

    def test_hash_length(self):
        img = Image.new("RGB", (100, 80), color="red")
        assert len(average_hash(img, 8)) == 64
        assert len(average_hash(img, 16)) == 256

    def test_uniform_image_has_no_set_bits(self):
        """No pixel is strictly brighter than the mean of a uniform image."""
        img = Image.new("RGB", (50, 50), color=(120, 120, 120))
        assert set(average_hash(img)) == {"0"}

    def test_half_bright_image(self):
        img = Image.new("L", (64, 64), color=0)
        img.paste(255, (0, 0, 32, 64))
        bits = average_hash(img.convert("RGB"), 8)
        rows = [bits[i : i + 8] for i in range(0, 64, 8)]
        assert all(row == "11110000" for row in rows)


class TestHashSimilarity:
    def test_identical(self):
        assert hash_similarity("1010", "1010") == 1.0

    def test_partial(self):
        assert hash_similarity("1100", "1010") == 0.5

    def test_length_mismatch_is_zero(self):
        assert hash_similarity("1" * 64, "1" * 256) == 0.0

    def test_missing_hash_is_zero(self):
        assert hash_similarity(None, "1010") == 0.0


def test_structural_similarity_extremes():
    black = np.zeros((8, 8, 3))
    white = np.full((8, 8, 3), 255.0)
    assert structural_similarity(black, black) == 1.0
    assert structural_similarity(black, white) == pytest.approx(0.0)


def test_histogram_normalized_by_sample_count():
    """Same colour at different sizes gives identical histograms."""
    small = color_histogram(Image.new("RGB", (20, 20), color=(10, 200, 30)))
    large = color_histogram(Image.new("RGB", (300, 150), color=(10, 200, 30)))

    assert small.shape == (3, 256)
    assert small.sum(axis=1) == pytest.approx([1.0, 1.0, 1.0])
    assert histogram_similarity(small, large) == pytest.approx(1.0)


class TestPerceptualEngine:
    """Test the combined local engine."""

    def test_self_similarity_is_one(self, config, make_image):
        path = make_image("a.png", size=(120, 90))
        engine = PerceptualEngine(config)

        score = engine.compare(path, path)

        assert score.similarity == pytest.approx(1.0)
        assert score.confidence == pytest.approx(0.90)

    def test_symmetric(self, config, tmp_path):
        path_a = tmp_path / "a.png"
        path_b = tmp_path / "b.png"
        gradient = Image.linear_gradient("L").convert("RGB")
        gradient.save(path_a)
        gradient.rotate(90).save(path_b)

        engine = PerceptualEngine(config)
        forward = engine.compare(path_a, path_b)
        backward = engine.compare(path_b, path_a)

        assert forward.similarity == backward.similarity
        assert forward.breakdown == backward.breakdown

    def test_resized_copy_is_similar(self, config, make_image):
        small = make_image("small.png", size=(64, 48), color=(30, 60, 200))
        large = make_image("large.png", size=(640, 480), color=(30, 60, 200))

        score = PerceptualEngine(config).compare(small, large)

        assert score.similarity >= 0.99

    def test_different_images_score_low(self, config, make_image):
        red = make_image("red.png", color=(255, 0, 0))
        blue = make_image("blue.png", color=(0, 0, 255))

        score = PerceptualEngine(config).compare(red, blue)

        assert score.similarity < 0.92

    def test_undecodable_image_contributes_zero(self, config, tmp_path, make_image):
        """A file that cannot be decoded fails every method for the pair."""
        good = make_image("good.png")
        broken = tmp_path / "broken.jpg"
        broken.write_bytes(b"not an image")

        engine = PerceptualEngine(config)
        features = engine.extract(broken)

        assert not features.usable
        assert set(features.errors) == {"ahash", "structural", "histogram"}
        assert engine.compare(good, broken) is None

    def test_hash_size_mismatch_contributes_zero(self, config, make_image):
        path = make_image("a.png")
        engine = PerceptualEngine(config)
        features_a = engine.extract(path)
        features_b = engine.extract(path)
        features_b.ahash = "1" * 256

        score = engine.compare_features(features_a, features_b)

        assert score.breakdown["ahash"] == 0.0
        assert score.similarity == pytest.approx(0.6)

    def test_extract_many_honours_cancellation(self, config, make_image):
        paths = [make_image(f"{i}.png") for i in range(3)]
        token = CancellationToken()
        token.cancel()

        assert PerceptualEngine(config).extract_many(paths, token) == {}
