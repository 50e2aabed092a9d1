"""Average (mean) perceptual hash for near-duplicate frame detection."""

from PIL import Image

HASH_SIZE = 8

# Frames whose hashes differ in at most this many bits count as duplicates.
DUPLICATE_DISTANCE = 10


def mean_hash(image: Image.Image) -> int:
    """64-bit hash: one bit per cell of an 8x8 grayscale thumbnail, set if above the mean."""
    small = image.convert("L").resize((HASH_SIZE, HASH_SIZE), Image.Resampling.BILINEAR)
    pixels = list(small.getdata())
    mean = sum(pixels) / len(pixels)
    bits = 0
    for pixel in pixels:
        bits = (bits << 1) | (1 if pixel > mean else 0)
    return bits


def hamming(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def to_hex(value: int) -> str:
    return f"{value:016x}"
