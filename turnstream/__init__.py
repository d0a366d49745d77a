"""turnstream: stream reconciliation and context pruning for agent runtimes."""

__version__ = "0.1.0"
