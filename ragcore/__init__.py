"""Knowledge retrieval, ranking and token-budgeted context assembly."""

__version__ = "0.3.0"
