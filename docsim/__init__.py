"""docsim: PDF similarity search over vector embeddings."""

__version__ = "0.1.0"
