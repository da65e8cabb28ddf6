"""
Ingestion Pipeline
══════════════════

  sizing.py        size tier and extraction strategy selection
  extraction.py    PDF text extraction backends + sync/chunked orchestration
  chunking.py      paragraph-aware chunker with sentence fallback
  embeddings.py    OpenAI embedding client and vector validation
  centroid.py      document centroid computation
  cancellation.py  cooperative cancellation token
  pipeline.py      DocumentPipeline state machine
"""
