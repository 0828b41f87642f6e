"""SnapKit: photo-to-social-media-kit generation service."""

__version__ = "0.2.0"
