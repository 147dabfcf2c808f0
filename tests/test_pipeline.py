import os

import numpy as np
import pytest
import scipy.sparse as sps
from scipy.sparse.csgraph import connected_components

from pipeline import TrackFinder, TrackingResult, load_event
from GraphConstruction import build_neighbor_graph
from utils.errors import ConfigurationError, ScorerFailure, EmbedderFailure

from conftest import ConstantScorer, HashScorer, FailingScorer, as_partition


def make_finder(filter_scorer=None, classify_scorer=None, **config):
    config.setdefault('embedding_dim', 3)
    return TrackFinder(config,
                       filter_scorer or ConstantScorer(1.0),
                       classify_scorer or ConstantScorer(1.0))


def check_partition(tracks, hit_ids):
    flat = [h for t in tracks for h in t]
    assert sorted(flat) == sorted(hit_ids.tolist())
    assert all(len(t) > 0 for t in tracks)


def test_two_separated_pairs(four_points):
    hit_ids, embeddings = four_points
    finder = make_finder(radius=1.0, max_neighbors=5, filter_threshold=0.5, classify_threshold=0.5)
    result = finder.find_tracks(hit_ids, embeddings)

    assert result.ok
    assert as_partition(result.tracks) == {frozenset([101, 102]), frozenset([203, 204])}
    assert result.edges.shape == (2, 2)
    assert result.scores.tolist() == [1.0, 1.0]


def test_single_point_is_its_own_track():
    finder = make_finder(radius=1.0, max_neighbors=5)
    result = finder.find_tracks(np.array([42]), np.array([[1., 2., 3.]]))
    assert result.tracks == [[42]]


def test_empty_event_gives_no_tracks():
    filter_scorer = ConstantScorer(1.0)
    finder = make_finder(filter_scorer=filter_scorer)
    result = finder.find_tracks(np.array([], dtype=np.int64), np.empty((0, 3)))
    assert result.ok
    assert result.tracks == []
    assert filter_scorer.calls == []


def test_partition_property(random_event):
    hit_ids, embeddings = random_event
    finder = make_finder(HashScorer(), HashScorer(), embedding_dim=4, radius=0.3,
                         max_neighbors=8, filter_threshold=0.2, classify_threshold=0.4)
    result = finder.find_tracks(hit_ids, embeddings)

    check_partition(result.tracks, hit_ids)
    assert np.all(result.edges[0] < result.edges[1])
    assert len(set(zip(*result.edges.tolist()))) == result.edges.shape[1]
    assert np.all(result.scores > 0.4)


def test_passing_thresholds_give_neighbour_graph_connectivity(random_event):
    hit_ids, embeddings = random_event
    finder = make_finder(embedding_dim=4, radius=0.2, max_neighbors=4,
                         filter_threshold=0.0, classify_threshold=0.0)
    result = finder.find_tracks(hit_ids, embeddings)

    edges, _ = build_neighbor_graph(embeddings, hit_ids, radius=0.2, max_neighbors=4, max_res=128)
    nb_points = len(hit_ids)
    adjacency = sps.coo_matrix((np.ones(edges.shape[1]), (edges[0], edges[1])), shape=(nb_points, nb_points))
    _, labels = connected_components(adjacency, directed=False)
    expected = {}
    for hit_id, label in zip(hit_ids.tolist(), labels.tolist()):
        expected.setdefault(label, set()).add(hit_id)

    assert as_partition(result.tracks) == {frozenset(g) for g in expected.values()}
    assert len(result.tracks) < nb_points


def test_identical_runs_give_identical_partitions(random_event):
    hit_ids, embeddings = random_event
    config = dict(embedding_dim=4, radius=0.3, max_neighbors=6, filter_threshold=0.3, classify_threshold=0.5)
    first = make_finder(HashScorer(), HashScorer(), **config).find_tracks(hit_ids, embeddings)
    second = make_finder(HashScorer(), HashScorer(), n_workers=3, chunk_size=50, **config).find_tracks(
        hit_ids, embeddings)

    assert as_partition(first.tracks) == as_partition(second.tracks)
    assert first.tracks == second.tracks


def test_classification_cut_splits_tracks(four_points):
    hit_ids, embeddings = four_points
    classify_scorer = ConstantScorer(0.3)
    finder = make_finder(classify_scorer=classify_scorer, radius=1.0, max_neighbors=5, classify_threshold=0.5)
    result = finder.find_tracks(hit_ids, embeddings)

    assert as_partition(result.tracks) == {frozenset([h]) for h in hit_ids.tolist()}
    assert result.edges.shape == (2, 0)
    assert len(classify_scorer.calls) == 1


def test_filter_cut_skips_classification(four_points):
    hit_ids, embeddings = four_points
    classify_scorer = FailingScorer()
    finder = make_finder(ConstantScorer(0.1), classify_scorer, radius=1.0, max_neighbors=5)
    result = finder.find_tracks(hit_ids, embeddings)
    assert result.ok
    assert len(result.tracks) == 4


def test_scorer_failure_aborts_the_event(four_points):
    hit_ids, embeddings = four_points
    finder = make_finder(classify_scorer=FailingScorer(), radius=1.0, max_neighbors=5)
    result = finder.find_tracks(hit_ids, embeddings)

    assert isinstance(result, TrackingResult)
    assert not result.ok
    assert result.tracks is None
    assert isinstance(result.error, ScorerFailure)
    assert result.error.stage == 'classify'
    assert finder.n_failed == 1

    # the next event still runs
    assert finder.find_tracks(np.array([1]), np.zeros((1, 3))).ok
    assert finder.n_events == 2


def test_malformed_scores_abort_the_event(four_points):
    hit_ids, embeddings = four_points
    finder = make_finder(filter_scorer=lambda x, e: np.ones(e.shape[1] + 1), radius=1.0, max_neighbors=5)
    result = finder.find_tracks(hit_ids, embeddings)
    assert result.error.stage == 'filter'


def test_min_track_size(four_points):
    hit_ids, embeddings = four_points
    hit_ids = np.r_[hit_ids, 999]
    embeddings = np.vstack([embeddings, [50., 50., 50.]])
    finder = make_finder(radius=1.0, max_neighbors=5, min_track_size=2)
    assert len(finder.find_tracks(hit_ids, embeddings).tracks) == 2


def test_resolution_cap_is_counted():
    embeddings = np.array([[0., 0., 0.], [100., 100., 100.], [100.001, 100., 100.]])
    finder = make_finder(radius=0.01, max_neighbors=5, grid_max_res=8)
    result = finder.find_tracks(np.array([1, 2, 3]), embeddings)
    assert as_partition(result.tracks) == {frozenset([1]), frozenset([2, 3])}
    assert finder.n_clamped == 1


def test_features_are_embedded_and_sent_to_scorers(four_points):
    hit_ids, embeddings = four_points
    features = np.hstack([embeddings * 2, np.ones((4, 2))])
    filter_scorer = ConstantScorer(1.0)
    finder = TrackFinder(dict(embedding_dim=3, radius=1.0, max_neighbors=5),
                         filter_scorer, ConstantScorer(1.0), embedder=lambda f: f[:, :3] / 2)
    result = finder.find_tracks_from_features(hit_ids, features)

    assert as_partition(result.tracks) == {frozenset([101, 102]), frozenset([203, 204])}
    assert filter_scorer.calls[0][0].shape == (4, 5)


def test_features_need_an_embedder(four_points):
    hit_ids, embeddings = four_points
    with pytest.raises(ConfigurationError):
        make_finder().find_tracks_from_features(hit_ids, embeddings)


def embedding_finder(embedder):
    return TrackFinder(dict(embedding_dim=3, radius=1.0, max_neighbors=5),
                       ConstantScorer(1.0), ConstantScorer(1.0), embedder=embedder)


def test_embedder_error_aborts_the_event(four_points):
    hit_ids, embeddings = four_points

    def embedder(features):
        raise RuntimeError('embedding backend down')

    finder = embedding_finder(embedder)
    result = finder.find_tracks_from_features(hit_ids, embeddings)

    assert not result.ok
    assert result.tracks is None
    assert isinstance(result.error, EmbedderFailure)
    assert result.error.stage == 'embed'
    assert 'embedding backend down' in str(result.error)
    assert isinstance(result.error.__cause__, RuntimeError)
    assert finder.n_events == 1
    assert finder.n_failed == 1


@pytest.mark.parametrize('embedder', [
    lambda f: np.full((len(f), 3), np.nan),
    lambda f: np.zeros((len(f), 4)),
    lambda f: np.zeros((len(f) - 1, 3)),
    lambda f: None,
])
def test_malformed_embeddings_abort_the_event(four_points, embedder):
    hit_ids, embeddings = four_points
    filter_scorer = ConstantScorer(1.0)
    finder = TrackFinder(dict(embedding_dim=3, radius=1.0, max_neighbors=5),
                         filter_scorer, ConstantScorer(1.0), embedder=embedder)
    result = finder.find_tracks_from_features(hit_ids, embeddings)

    assert isinstance(result.error, EmbedderFailure)
    assert finder.n_failed == 1
    assert filter_scorer.calls == []

    # the next event still runs
    assert finder.find_tracks(hit_ids, embeddings).ok


def test_empty_features_are_not_embedded():
    calls = []
    finder = embedding_finder(lambda f: calls.append(f))
    result = finder.find_tracks_from_features(np.array([], dtype=np.int64), np.empty((0, 5)))
    assert result.tracks == []
    assert calls == []


def test_hit_ids_must_be_one_dimensional(four_points):
    hit_ids, embeddings = four_points
    with pytest.raises(ValueError):
        make_finder().find_tracks(hit_ids.reshape(2, 2), embeddings)


def test_non_finite_embeddings_are_rejected(four_points):
    hit_ids, embeddings = four_points
    embeddings = embeddings.copy()
    embeddings[2, 1] = np.inf
    with pytest.raises(ValueError):
        make_finder().find_tracks(hit_ids, embeddings)


def test_run_processes_events_in_order(four_points):
    hit_ids, embeddings = four_points
    finder = make_finder(radius=1.0, max_neighbors=5)
    events = [('event1', hit_ids, embeddings), ('event2', hit_ids[:1], embeddings[:1])]
    results = list(finder.run(events))
    assert [name for name, _ in results] == ['event1', 'event2']
    assert results[1][1].tracks == [[101]]


def test_debug_dumps(four_points, tmp_path):
    hit_ids, embeddings = four_points
    finder = make_finder(radius=1.0, max_neighbors=5, debug_dir=str(tmp_path))
    finder.find_tracks(hit_ids, embeddings, event_name='event7')
    assert sorted(os.listdir(str(tmp_path))) == ['event7_edges.npy', 'event7_embedding.npy',
                                                 'event7_filter_scores.npy']
    assert np.load(str(tmp_path / 'event7_edges.npy')).shape == (2, 2)


@pytest.mark.parametrize('config', [
    dict(embedding_dim=2),
    dict(radius=0.),
    dict(radius=-1.),
    dict(max_neighbors=0),
    dict(grid_max_res=0),
    dict(filter_threshold=1.5),
    dict(classify_threshold=-0.1),
    dict(min_track_size=0),
    dict(n_workers=0),
    dict(max_rows=0),
    dict(embedding_dim=3.5),
    dict(not_an_option=1),
])
def test_invalid_configuration_fails_at_construction(config):
    with pytest.raises(ConfigurationError):
        make_finder(**config)


def test_scorers_must_be_callable():
    with pytest.raises(ConfigurationError):
        TrackFinder(dict(embedding_dim=3), 'filter.pt', ConstantScorer())


def test_malformed_event_input(four_points):
    hit_ids, embeddings = four_points
    finder = make_finder()
    with pytest.raises(ValueError):
        finder.find_tracks(hit_ids, np.zeros((4, 4)))
    with pytest.raises(ValueError):
        finder.find_tracks(hit_ids[:3], embeddings)
    with pytest.raises(ValueError):
        finder.find_tracks(np.array([1, 1, 2, 3]), embeddings)


def test_load_event(tmp_path):
    event_path = str(tmp_path / 'event1.npz')
    np.savez(event_path, hit_id=np.array([1, 2]), embedding=np.zeros((2, 3)))
    hit_ids, features, embeddings = load_event(event_path)
    assert hit_ids.tolist() == [1, 2]
    assert features is None
    assert embeddings.shape == (2, 3)

    np.savez(event_path, hit_id=np.array([1, 2]))
    with pytest.raises(ValueError):
        load_event(event_path)
