"""
Pricing calculations and rate management.

Handles cost computations for chat tokens, transcriptions and images.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Sequence, Tuple

from .errors import InvalidArgument


# Order matters: image price tables and per-day image counts are aligned with it.
IMAGE_SIZES: Tuple[str, ...] = ("256x256", "512x512", "1024x1024")


def round_cost(value: Decimal, places: int) -> float:
    """Round a cost half-up to a fixed number of decimal places."""
    exponent = Decimal(1).scaleb(-places)
    return float(value.quantize(exponent, rounding=ROUND_HALF_UP))


def chat_token_cost(tokens: int, price_per_1k: float) -> float:
    """Calculate the cost of chat tokens.

    Args:
        tokens: Number of tokens consumed
        price_per_1k: Price per 1000 tokens

    Returns:
        Cost rounded to 6 decimal places
    """
    cost = Decimal(tokens) * Decimal(str(price_per_1k)) / Decimal("1000")
    return round_cost(cost, 6)


def transcription_cost(seconds: float, price_per_minute: float) -> float:
    """Calculate the cost of transcribed audio.

    Args:
        seconds: Duration of the transcribed audio in seconds
        price_per_minute: Price per minute of audio

    Returns:
        Cost rounded to 2 decimal places
    """
    cost = Decimal(str(seconds)) * Decimal(str(price_per_minute)) / Decimal("60")
    return round_cost(cost, 2)


def image_size_index(image_size: str) -> int:
    """Resolve an image size to its position in IMAGE_SIZES.

    Raises:
        InvalidArgument: If the size is not supported
    """
    try:
        return IMAGE_SIZES.index(image_size)
    except ValueError:
        raise InvalidArgument(
            f"Invalid image size: {image_size}. Must be one of {list(IMAGE_SIZES)}"
        )


def image_cost(image_size: str, image_prices: Sequence[float]) -> float:
    """Look up the price of one generated image.

    Args:
        image_size: One of IMAGE_SIZES
        image_prices: Prices aligned with IMAGE_SIZES

    Returns:
        Price of a single image of that size

    Raises:
        InvalidArgument: If the size is unknown or has no price
    """
    index = image_size_index(image_size)
    if index >= len(image_prices):
        raise InvalidArgument(f"No price configured for image size {image_size}")
    return float(image_prices[index])
