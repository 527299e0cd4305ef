"""Bridge between BAYERNluft ventilation controllers and a key/value state tree."""

__version__ = "0.3.0"
