"""Ad response normalization service for VAST and VMAP."""

__version__ = "0.1.0"