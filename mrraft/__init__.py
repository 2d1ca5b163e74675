"""MapReduce with a master replicated through Raft, plus workers and an inverted-index application."""

__version__ = "0.1.0"

__all__ = ["__version__"]