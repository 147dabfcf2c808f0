import numpy as np
import pytest

from EdgeScoring import EdgeScorer


class ConstantScorer(EdgeScorer):
    """Gives every edge the same score and remembers what it was called with"""

    def __init__(self, value=1.0):
        self.value = value
        self.calls = []

    def score(self, node_features, edges):
        self.calls.append((node_features, edges))
        return np.full(edges.shape[1], self.value)


class HashScorer(EdgeScorer):
    """Deterministic pseudo-random scores in [0, 1] depending on the edge endpoints"""

    def score(self, node_features, edges):
        return (np.sin(edges[0] * 12.9898 + edges[1] * 78.233) + 1) / 2


class FailingScorer(EdgeScorer):

    def score(self, node_features, edges):
        raise RuntimeError('inference backend unavailable')


def as_partition(tracks):
    return {frozenset(track) for track in tracks}


@pytest.fixture
def four_points():
    hit_ids = np.array([101, 102, 203, 204])
    embeddings = np.array([[0., 0., 0.],
                           [0.01, 0., 0.],
                           [10., 10., 10.],
                           [10.01, 10., 10.]])
    return hit_ids, embeddings


@pytest.fixture
def random_event():
    rng = np.random.RandomState(42)
    nb_points = 400
    hit_ids = rng.permutation(10 * nb_points)[:nb_points] + 1000
    embeddings = rng.uniform(-1, 1, size=(nb_points, 4))
    return hit_ids, embeddings
