"""Chat with your notes: retrieval-augmented answers over a markdown vault."""

__version__ = "0.1.0"
