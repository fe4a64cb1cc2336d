"""Command-line tools for the agent knowledge base.

- ``python -m src.cli`` — submit, inspect, query and delete knowledge
  sources, and tune per-agent RAG settings (see :mod:`src.cli.ingest`).
"""
