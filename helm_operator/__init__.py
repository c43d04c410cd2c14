"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "conditions",
    "backoff",
    "values",
    "helm",
    "store",
    "source_controller",
    "helm_controller",
    "orchestrator",
    "exceptions",
]
