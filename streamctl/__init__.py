"""streamctl - web dashboard supervising ffmpeg restream jobs."""

__version__ = "1.0.0"
