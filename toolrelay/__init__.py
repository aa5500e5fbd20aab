"""toolrelay -- streaming tool-call orchestration across LLM vendors."""

__version__ = "0.1.0"
