"""Ranked, typo-tolerant stop name search for public-transit gazetteers."""

__version__ = "0.1.0"
