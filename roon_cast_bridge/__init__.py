"""Bridge Roon now-playing state to a Chromecast receiver app."""

__version__ = "1.0.0"
