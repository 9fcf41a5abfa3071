"""homehub: encrypted device messaging and automation for a smart-home hub."""

__version__ = "0.1.0"
