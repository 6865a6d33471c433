"""dreamflow - Dropbox dream-journal ingestion and analysis pipeline."""

__version__ = "0.1.0"
