"""
Embedding contract.

An embedder is any callable embedder(features) -> embeddings mapping raw
spacepoint features (N, F) to points (N, D) of the learned space.
"""

# System
import logging

# Externals
import numpy as np

# Locals
from utils.errors import EmbedderFailure


def validate_embeddings(embeddings, nb_points, embedding_dim):
    """Turn embedder output into a float array of shape (nb_points, embedding_dim), or raise EmbedderFailure"""
    if embeddings is None:
        raise EmbedderFailure('returned no embeddings')
    try:
        embeddings = np.asarray(embeddings, dtype=np.float64)
    except (TypeError, ValueError) as err:
        raise EmbedderFailure('returned non-numeric embeddings (%s)' % err)
    if embeddings.shape != (nb_points, embedding_dim):
        raise EmbedderFailure('expected shape (%i, %i), got %s' % (nb_points, embedding_dim, embeddings.shape))
    if not np.isfinite(embeddings).all():
        raise EmbedderFailure('returned non-finite embeddings')
    return embeddings


def embed_spacepoints(embedder, features, embedding_dim):
    """
    Embed one event. Any error raised by the embedder is reported as an
    EmbedderFailure. Empty events are not sent to the embedder.
    """
    nb_points = len(features)
    if nb_points == 0:
        return np.empty((0, embedding_dim), dtype=np.float64)

    logging.debug('Embed %i spacepoints', nb_points)
    try:
        embeddings = embedder(features)
    except EmbedderFailure:
        raise
    except Exception as err:
        raise EmbedderFailure('%s: %s' % (type(err).__name__, err)) from err
    return validate_embeddings(embeddings, nb_points, embedding_dim)
