"""modelbridge -- one conversation model, many LLM backends."""

__version__ = "0.1.0"
