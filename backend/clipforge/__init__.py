"""ClipForge: platform-optimized short clips from long-form video."""

__version__ = "1.0.0"
