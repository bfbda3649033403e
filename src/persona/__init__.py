"""
Persona - streaming speech and semantic memory for conversational avatars

- Sentence-level streaming text-to-speech with bounded concurrency
- In-order playback with cancellation
- Per-avatar, per-user semantic memory (extraction + retrieval)
"""

__version__ = "0.1.0"
__author__ = "Persona Team"
