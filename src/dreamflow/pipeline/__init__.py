"""Transcription, analysis, and embedding pipeline."""
