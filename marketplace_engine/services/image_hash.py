"""
Perceptual image hashing for near-duplicate design detection.
Fingerprints decoded pixel content, never the image's URL or file name.
"""

import io

import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError

from marketplace_engine.core.exceptions import ValidationError

logger = structlog.get_logger()

HASH_SIZE = 8
FINGERPRINT_BITS = HASH_SIZE * HASH_SIZE


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode raw image content, raising ValidationError if it is not an image."""
    if not image_bytes:
        raise ValidationError("Image content is empty")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()  # Force full decode so truncated files fail here
        return image
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        logger.warning("Failed to decode image", size=len(image_bytes), error=str(e))
        raise ValidationError("Image content could not be decoded", details={"error": str(e)})


def dhash(image_bytes: bytes, hash_size: int = HASH_SIZE) -> str:
    """
    Generate difference hash (dHash) for an image.
    Good for detecting duplicates with minor modifications such as
    rescaling, recompression or small brightness changes.

    Returns:
        hash_size * hash_size bits as a zero-padded hex string
    """
    # Grayscale, resize to hash_size + 1 x hash_size
    image = decode_image(image_bytes).convert('L')
    image = image.resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)

    pixels = np.array(image, dtype=np.int16)

    # Horizontal gradient
    diff = pixels[:, 1:] > pixels[:, :-1]

    hash_bits = ''.join('1' if b else '0' for b in diff.flatten())
    hash_hex = hex(int(hash_bits, 2))[2:].rjust(len(hash_bits) // 4, '0')

    logger.debug("Generated dHash", hash_size=hash_size, fingerprint=hash_hex)
    return hash_hex


def hamming_distance(hash1: str, hash2: str) -> int:
    """Number of differing bits between two equal-length hex hashes."""
    if len(hash1) != len(hash2):
        raise ValueError("Hashes of different lengths are not comparable")
    return bin(int(hash1, 16) ^ int(hash2, 16)).count('1')


def hash_similarity(hash1: str, hash2: str) -> float:
    """
    Normalized Hamming similarity: 1 - (differing bits / total bits).

    Hashes of different lengths or malformed hex are treated as unrelated.
    """
    try:
        distance = hamming_distance(hash1, hash2)
    except ValueError:
        return 0.0
    total_bits = len(hash1) * 4  # 4 bits per hex char
    return 1.0 - (distance / total_bits) if total_bits > 0 else 0.0
