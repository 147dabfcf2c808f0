"""
Exceptions raised by the track finding pipeline.
"""


class TrackFindingError(Exception):
    """Base class for all pipeline errors"""


class ConfigurationError(TrackFindingError, ValueError):
    """Invalid pipeline configuration. Raised at construction time."""


class ScorerFailure(TrackFindingError):
    """An edge scoring service failed or returned malformed scores.
    Only the current event is lost."""

    def __init__(self, stage, message):
        super(ScorerFailure, self).__init__('%s scorer: %s' % (stage, message))
        self.stage = stage


class EmbedderFailure(TrackFindingError):
    """The embedding service failed or returned malformed embeddings.
    Only the current event is lost."""

    stage = 'embed'

    def __init__(self, message):
        super(EmbedderFailure, self).__init__('embedder: %s' % message)
