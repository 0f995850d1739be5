"""Desktop hardware monitor with a privilege-separated collection pipeline."""

__version__ = "0.1.0"
