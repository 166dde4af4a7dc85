"""Options open-interest tracker: acquisition, OI deltas, persistence and pattern signals."""

__version__ = "0.1.0"
