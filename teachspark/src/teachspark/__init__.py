"""TeachSpark lesson, slide and worksheet generation services."""

__version__ = "1.0.0"
