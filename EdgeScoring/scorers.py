"""
Edge scoring contract.

A scorer is any callable scorer(node_features, edges) -> scores, where edges is
a (2, E) integer array and scores an array of E values in [0, 1]. The pipeline
calls one scorer to filter the candidate edges and another to classify the
survivors, and cuts both on a threshold.
"""

# System
import logging

# Externals
import numpy as np

# Locals
from utils.errors import ScorerFailure


class EdgeScorer(object):
    """
    Base class for edge scoring services.
    Subclasses implement score(); scorers must be deterministic.
    """

    def __call__(self, node_features, edges):
        return self.score(node_features, edges)

    def score(self, node_features, edges):
        """Virtual method to score edges"""
        raise NotImplementedError


def validate_scores(scores, nb_edges, stage):
    """Turn scorer output into a float array of length nb_edges, or raise ScorerFailure"""
    if scores is None:
        raise ScorerFailure(stage, 'returned no scores')
    try:
        scores = np.asarray(scores, dtype=np.float64)
    except (TypeError, ValueError) as err:
        raise ScorerFailure(stage, 'returned non-numeric scores (%s)' % err)
    if scores.ndim == 0 and nb_edges == 1:
        scores = scores.reshape(1)
    if scores.shape != (nb_edges,):
        raise ScorerFailure(stage, 'expected %i scores, got shape %s' % (nb_edges, scores.shape))
    if not np.isfinite(scores).all():
        raise ScorerFailure(stage, 'returned non-finite scores')
    if nb_edges and (scores.min() < 0 or scores.max() > 1):
        raise ScorerFailure(stage, 'returned scores outside [0, 1]')
    return scores


def score_edges(scorer, node_features, edges, stage):
    """
    Run one scoring pass. Any error raised by the scorer is reported as a
    ScorerFailure for this stage. Empty edge lists are not sent to the scorer.
    """
    nb_edges = edges.shape[1]
    if nb_edges == 0:
        return np.empty(0, dtype=np.float64)

    logging.debug('Get %s scores for %i edges', stage, nb_edges)
    try:
        scores = scorer(node_features, edges)
    except ScorerFailure:
        raise
    except Exception as err:
        raise ScorerFailure(stage, '%s: %s' % (type(err).__name__, err)) from err
    return validate_scores(scores, nb_edges, stage)


def apply_threshold(edges, scores, threshold):
    """Keep the edges scoring strictly above threshold"""
    keep = scores > threshold
    return edges[:, keep], scores[keep]
