"""Sprites.dev control plane client."""

from .client import (
    SPRITES_API_BASE,
    SpritesApiError,
    SpritesAuthError,
    SpritesClient,
    SpritesConfigError,
    SpritesError,
    SpritesNotFoundError,
)

__all__ = [
    "SPRITES_API_BASE",
    "SpritesApiError",
    "SpritesAuthError",
    "SpritesClient",
    "SpritesConfigError",
    "SpritesError",
    "SpritesNotFoundError",
]
