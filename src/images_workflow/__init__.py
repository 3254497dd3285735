"""Media-processing and sharing-workflow engine for an image-hosting service."""

__version__ = "0.1.0"
