"""
Similarity Search
═════════════════

  types.py         options, stage outputs, result/response value types
  page_range.py    source page-range parsing and validation
  jaccard.py       word-level Jaccard overlap
  stage0.py        centroid recall sweep
  stage1.py        candidate-aware chunk pre-filter
  stage2.py        bidirectional fine scoring + section detection
  orchestrator.py  SimilaritySearchService
"""
