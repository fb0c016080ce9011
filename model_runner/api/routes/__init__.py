"""API route handlers for model-runner.

Routes:
- text: /text/raw, /text/instruct
- audio: /audio/transcribe
- models: /models, /models/{id}/load, /models/{id}/unload
- health: /health, /health/ready
"""

__all__: list[str] = []
