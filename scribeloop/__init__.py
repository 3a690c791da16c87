"""
ScribeLoop - Speech-to-text with document-aware enhancement and learning.

This package provides:
- Microphone capture normalized to 16kHz mono PCM16
- Local transcription via faster-whisper
- Document type classification (email, message, code, ...)
- Local rule-based or cloud LLM enhancement with silent fallback
- Spoken "BV ..." commands that pick the output format
- A pattern store that learns from user edits

Main entry point: python -m scribeloop
"""

__version__ = "1.0.0"
