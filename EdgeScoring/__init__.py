"""
Edge scoring and embedding services: the call contracts and adapters for trained models.
"""

from .scorers import EdgeScorer, apply_threshold, score_edges, validate_scores
from .embedding import embed_spacepoints, validate_embeddings
