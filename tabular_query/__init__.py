"""
Conversational tabular-data query engine.

Routes free-text chat turns over a large timestamped dataset into compact,
pre-computed payloads and deterministic exports.
"""
