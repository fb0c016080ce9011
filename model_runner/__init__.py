"""model-runner: Local inference server for language and speech models.

This package serves text generation and audio transcription from locally
resident models, using transformers/torch or llama-cpp-python as the
forward-pass backend.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
