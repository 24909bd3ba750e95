"""subtap: intercept, cache and export the subtitles a video page loads."""

__version__ = "0.1.0"
