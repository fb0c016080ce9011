"""Inference engines for model-runner.

Modules:
- sampling: Repeat penalty, temperature and nucleus sampling
- decode: The shared token-by-token decode loop
- generation: Causal LM text generation
- audio: WAV decoding and log-mel features
- transcription: Windowed Whisper decoding with temperature fallback
- runtimes: Backend loaders (transformers, llama.cpp)
"""

__all__: list[str] = []
