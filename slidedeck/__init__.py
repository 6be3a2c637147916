"""slidedeck: extract slide decks from lecture and talk videos."""

__version__ = "0.1.0"
