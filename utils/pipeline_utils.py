import os
import sys
import argparse
import logging
import numbers

import yaml

from .errors import ConfigurationError


# Set defaults, overridden by a config file, and then the command-line
DEFAULTS = {'embedding_dim': 8,
            'radius': 0.4,
            'max_neighbors': 500,
            'grid_max_res': 128,
            'filter_threshold': 0.5,
            'classify_threshold': 0.5,
            'min_track_size': 1,
            'n_workers': 1,
            'chunk_size': 4096,
            'max_rows': 2 ** 20,
            'debug_dir': None,
            'model_dir': None,
            'input_dir': None,
            'output_dir': None,
            'verbose': False
            }


def parse_args(argv=None):
    '''
    This pattern allows defaults to be set and overridden by a config file, and then the command-line.
    '''
    parser = argparse.ArgumentParser('pipeline.py', description='Build track candidates from embedded spacepoints')
    add_arg = parser.add_argument
    add_arg('config_file', nargs='?', default=None)
    add_arg('--model-dir', dest='model_dir', help='Directory holding embed.pt, filter.pt and gnn.pt')
    add_arg('--input-dir', dest='input_dir', help='Directory of .npz events')
    add_arg('--output-dir', dest='output_dir', help='Where to write track labels')
    add_arg('--radius', type=float, help='Neighbour radius in embedding space')
    add_arg('--max-neighbors', dest='max_neighbors', type=int, help='Maximum neighbours per spacepoint')
    add_arg('--filter-threshold', dest='filter_threshold', type=float)
    add_arg('--classify-threshold', dest='classify_threshold', type=float)
    add_arg('--min-track-size', dest='min_track_size', type=int)
    add_arg('--n-workers', dest='n_workers', type=int, help='Threads used for neighbour search')
    add_arg('--debug-dir', dest='debug_dir', help='Dump intermediate arrays per event')
    add_arg('-v', '--verbose', action='store_true', default=None)
    return parser.parse_args(argv)


def load_config(config_file=None, **overrides):
    """Load configuration from defaults, an optional yaml file and keyword overrides"""
    config = dict(DEFAULTS)
    if config_file is not None:
        with open(config_file) as f:
            file_config = yaml.load(f, Loader=yaml.FullLoader)
        if file_config is not None:
            config.update(file_config)
    # Command line values left unset arrive as None
    config.update({key: val for key, val in overrides.items() if val is not None})
    for key in ['debug_dir', 'model_dir', 'input_dir', 'output_dir']:
        if config[key] is not None:
            config[key] = os.path.expandvars(config[key])
    return validate_config(config)


def _is_int(val):
    return isinstance(val, numbers.Integral) and not isinstance(val, bool)


def _is_float(val):
    return isinstance(val, numbers.Real) and not isinstance(val, bool)


def validate_config(config):
    """Check every pipeline parameter, raising ConfigurationError on the first bad one.
    Returns a full config dict with defaults filled in."""
    unknown = set(config) - set(DEFAULTS)
    if unknown:
        raise ConfigurationError('Unknown configuration keys: %s' % ', '.join(sorted(unknown)))
    config = dict(DEFAULTS, **config)

    if not _is_int(config['embedding_dim']) or config['embedding_dim'] < 3:
        raise ConfigurationError('embedding_dim must be an integer >= 3, DIM < 3 is not supported (got %r)'
                                 % (config['embedding_dim'],))
    if not _is_float(config['radius']) or not config['radius'] > 0:
        raise ConfigurationError('radius must be > 0 (got %r)' % (config['radius'],))
    for key in ['max_neighbors', 'grid_max_res', 'min_track_size', 'n_workers', 'chunk_size', 'max_rows']:
        if not _is_int(config[key]) or config[key] < 1:
            raise ConfigurationError('%s must be a positive integer (got %r)' % (key, config[key]))
    for key in ['filter_threshold', 'classify_threshold']:
        if not _is_float(config[key]) or not 0 <= config[key] <= 1:
            raise ConfigurationError('%s must lie in [0, 1] (got %r)' % (key, config[key]))
    return config


def config_logging(verbose, output_dir=None, append=False):
    log_format = '%(asctime)s %(levelname)s %(message)s'
    log_level = logging.DEBUG if verbose else logging.INFO
    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setLevel(log_level)
    handlers = [stream_handler]
    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)
        log_file = os.path.join(output_dir, 'out.log')
        mode = 'a' if append else 'w'
        file_handler = logging.FileHandler(log_file, mode=mode)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)
    logging.basicConfig(level=log_level, format=log_format, handlers=handlers)
