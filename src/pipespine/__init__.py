"""
pipespine - Dependency-aware bring-up for CDC pipeline stacks.

Starts services in dependency order, gates each on its health check,
registers CDC connectors idempotently, and reports one structured outcome
per run.
"""

__version__ = "0.1.0"
