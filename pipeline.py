# SYSTEM
import os
import logging
from collections import namedtuple
from time import time

# EXTERNALS
import numpy as np

# UTILS
from utils.pipeline_utils import parse_args, load_config, validate_config, config_logging
from utils.errors import ScorerFailure, EmbedderFailure, ConfigurationError

# PIPELINE IMPORTS
from GraphConstruction import build_neighbor_graph
from EdgeScoring import score_edges, apply_threshold, embed_spacepoints
from Labelling import label_components, assemble_tracks, save_labels


class TrackingResult(namedtuple('TrackingResult', ['tracks', 'edges', 'scores', 'error'])):
    """
    Outcome of one event. On success, tracks holds the track candidates and
    edges/scores the classified edges used for labelling. On failure, error
    holds the exception and no track candidates are given.
    """
    __slots__ = ()

    @property
    def ok(self):
        return self.error is None


class TrackFinder(object):
    """
    Runs the track finding chain on one event at a time:
    grid -> radius neighbours -> filter cut -> GNN classification cut ->
    connected components -> track candidates.
    """

    def __init__(self, config, filter_scorer, classify_scorer, embedder=None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = validate_config(config)
        for name, scorer in [('filter', filter_scorer), ('classify', classify_scorer)]:
            if not callable(scorer):
                raise ConfigurationError('The %s scorer must be callable' % name)
        if embedder is not None and not callable(embedder):
            raise ConfigurationError('The embedder must be callable')
        self.filter_scorer = filter_scorer
        self.classify_scorer = classify_scorer
        self.embedder = embedder

        # Diagnostic counters
        self.n_events = 0
        self.n_failed = 0
        self.n_clamped = 0

        self.logger.info('Embedding dimension: %i', self.config['embedding_dim'])
        self.logger.info('radius value       : %g', self.config['radius'])
        self.logger.info('k-nearest neighbour: %i', self.config['max_neighbors'])
        self.logger.info('filtering cut      : %g', self.config['filter_threshold'])
        self.logger.info('classification cut : %g', self.config['classify_threshold'])

    def _check_event(self, hit_ids, embeddings):
        hit_ids = np.asarray(hit_ids, dtype=np.int64)
        if hit_ids.ndim != 1:
            raise ValueError('Expected a 1-D array of hit IDs, got shape %s' % (hit_ids.shape,))
        embeddings = np.asarray(embeddings, dtype=np.float64)
        if embeddings.size == 0 and len(hit_ids) == 0:
            embeddings = embeddings.reshape(0, self.config['embedding_dim'])
        if embeddings.ndim != 2 or embeddings.shape[1] != self.config['embedding_dim']:
            raise ValueError('Expected embeddings of shape (N, %i), got %s'
                             % (self.config['embedding_dim'], embeddings.shape))
        if len(hit_ids) != len(embeddings):
            raise ValueError('Got %i hit IDs for %i embedded points' % (len(hit_ids), len(embeddings)))
        if not np.isfinite(embeddings).all():
            raise ValueError('Embeddings must be finite')
        if len(np.unique(hit_ids)) != len(hit_ids):
            raise ValueError('Hit IDs must be unique within an event')
        return hit_ids, embeddings

    def _dump(self, event_name, **arrays):
        debug_dir = self.config['debug_dir']
        if debug_dir is None:
            return
        os.makedirs(debug_dir, exist_ok=True)
        for key, val in arrays.items():
            np.save(os.path.join(debug_dir, '%s_%s.npy' % (event_name, key)), val)

    def find_tracks(self, hit_ids, embeddings, node_features=None, event_name='event'):
        """
        Build track candidates for one event of embedded spacepoints.
        node_features, if given, is sent to the scorers instead of the embeddings.
        """
        hit_ids, embeddings = self._check_event(hit_ids, embeddings)
        nb_points = len(hit_ids)
        self.n_events += 1
        cfg = self.config

        if nb_points == 0:
            self.logger.info('%s: no spacepoints', event_name)
            empty = np.empty((2, 0), dtype=np.int64)
            return TrackingResult(tracks=[], edges=empty, scores=np.empty(0), error=None)

        # Building edges
        edges, grid = build_neighbor_graph(embeddings, hit_ids, cfg['radius'], cfg['max_neighbors'],
                                           cfg['grid_max_res'], chunk_size=cfg['chunk_size'],
                                           n_workers=cfg['n_workers'], max_rows=cfg['max_rows'])
        if grid.clamped:
            self.n_clamped += 1
        self.logger.debug('%s: built %i edges from %i spacepoints', event_name, edges.shape[1], nb_points)

        self._dump(event_name, embedding=embeddings, edges=edges)

        if node_features is None:
            node_features = embeddings

        try:
            # Filtering
            filter_scores = score_edges(self.filter_scorer, node_features, edges, 'filter')
            self._dump(event_name, filter_scores=filter_scores)
            edges, _ = apply_threshold(edges, filter_scores, cfg['filter_threshold'])
            self.logger.debug('%s: %i edges after filtering', event_name, edges.shape[1])

            # GNN
            gnn_scores = score_edges(self.classify_scorer, node_features, edges, 'classify')
            edges, gnn_scores = apply_threshold(edges, gnn_scores, cfg['classify_threshold'])
            self.logger.debug('%s: %i edges after classification', event_name, edges.shape[1])
        except ScorerFailure as err:
            self.n_failed += 1
            self.logger.error('%s: aborted, %s', event_name, err)
            return TrackingResult(tracks=None, edges=None, scores=None, error=err)

        # Track labelling
        labels = label_components(nb_points, edges)
        tracks = assemble_tracks(labels, hit_ids, cfg['min_track_size'])
        self.logger.info('%s: %i spacepoints, %i track candidates', event_name, nb_points, len(tracks))

        return TrackingResult(tracks=tracks, edges=edges, scores=gnn_scores, error=None)

    def find_tracks_from_features(self, hit_ids, features, event_name='event'):
        """Embed raw spacepoint features, then build track candidates.
        The scorers see the raw features. An embedder failure is returned
        as the result error, like a scorer failure."""
        if self.embedder is None:
            raise ConfigurationError('No embedder configured')
        features = np.asarray(features, dtype=np.float64)
        if features.ndim != 2:
            raise ValueError('Expected features of shape (N, F), got %s' % (features.shape,))

        try:
            embeddings = embed_spacepoints(self.embedder, features, self.config['embedding_dim'])
        except EmbedderFailure as err:
            self.n_events += 1
            self.n_failed += 1
            self.logger.error('%s: aborted, %s', event_name, err)
            return TrackingResult(tracks=None, edges=None, scores=None, error=err)

        return self.find_tracks(hit_ids, embeddings, node_features=features, event_name=event_name)

    def run(self, events):
        """Process (event_name, hit_ids, embeddings) tuples one after the other"""
        for event_name, hit_ids, embeddings in events:
            yield event_name, self.find_tracks(hit_ids, embeddings, event_name=event_name)


def build_track_finder(config):
    """Wire the TorchScript models found in config['model_dir'] into a TrackFinder"""
    from EdgeScoring.torch_models import load_models, TorchEmbedder, TorchEdgeScorer

    e_model, f_model, g_model = load_models(config['model_dir'])
    return TrackFinder(config,
                       filter_scorer=TorchEdgeScorer(f_model),
                       classify_scorer=TorchEdgeScorer(g_model),
                       embedder=TorchEmbedder(e_model))


def load_event(event_path):
    """Read hit IDs and either raw features or embeddings from an .npz event file"""
    with np.load(event_path) as f:
        hit_ids = f['hit_id']
        features = f['features'] if 'features' in f.files else None
        embeddings = f['embedding'] if 'embedding' in f.files else None
    if features is None and embeddings is None:
        raise ValueError('%s holds neither features nor embedding' % event_path)
    return hit_ids, features, embeddings


def main(argv=None):
    """ Main function """

    tic = time()
    args = parse_args(argv)
    config = load_config(args.config_file,
                         **{k: v for k, v in vars(args).items() if k != 'config_file'})
    config_logging(config['verbose'], config['output_dir'])
    logging.info('Initialising')
    logging.info('Configuration: %s', config)

    if config['input_dir'] is None or config['output_dir'] is None:
        raise ConfigurationError('Both input_dir and output_dir are needed')

    track_finder = build_track_finder(config)

    event_files = sorted(f for f in os.listdir(config['input_dir']) if f.endswith('.npz'))
    logging.info('%i events to process', len(event_files))
    for event_file in event_files:
        event_name = os.path.splitext(event_file)[0]
        hit_ids, features, embeddings = load_event(os.path.join(config['input_dir'], event_file))
        if embeddings is None:
            result = track_finder.find_tracks_from_features(hit_ids, features, event_name=event_name)
        else:
            result = track_finder.find_tracks(hit_ids, embeddings, node_features=features, event_name=event_name)
        if not result.ok:
            logging.warning('Skipping %s', event_name)
            continue
        save_labels(result.tracks, event_name, config['output_dir'])

    logging.info('%i events, %i failed, %i with capped grid resolution',
                 track_finder.n_events, track_finder.n_failed, track_finder.n_clamped)
    logging.info('Processing finished in %.1f s', time() - tic)


if __name__ == "__main__":
    main()
