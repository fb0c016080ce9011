"""Services for model-runner.

Services:
- model_registry: Lazy loading, LRU eviction, memory accounting
- scheduler: Per-model admission queues and the worker hand-off
"""

__all__: list[str] = []
