"""Ketchup Calendar: on-device and Google calendars behind one coordinator."""

__version__ = "0.1.0"
