"""PocketLM -- local multimodal chat with a managed model lifecycle."""

__version__ = "0.3.0"
