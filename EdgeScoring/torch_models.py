"""
Adapters exposing trained PyTorch models (embedding, filter, GNN) through the
edge scoring contract.
"""

# System
import os
import logging

# Externals
import numpy as np
import torch

# Locals
from utils.errors import ConfigurationError
from .scorers import EdgeScorer

DEVICE = 'cuda' if torch.cuda.is_available() else 'cpu'

EMBED_MODEL = 'embed.pt'
FILTER_MODEL = 'filter.pt'
GNN_MODEL = 'gnn.pt'


def load_torchscript_model(model_path, device=DEVICE):
    """Load a TorchScript model in eval mode"""
    try:
        model = torch.jit.load(model_path, map_location=device)
    except (RuntimeError, ValueError, OSError) as err:
        raise ConfigurationError('Failed to load model %s: %s' % (model_path, err)) from err
    model.eval()
    logging.info('Loaded model %s on device %s', model_path, device)
    return model


def load_models(model_dir, device=DEVICE):
    """Load the embedding, filter and GNN models from a model directory"""
    if model_dir is None:
        raise ConfigurationError('No model directory given')
    return [load_torchscript_model(os.path.join(model_dir, name), device)
            for name in [EMBED_MODEL, FILTER_MODEL, GNN_MODEL]]


class TorchEmbedder(object):
    """Map raw spacepoint features (N, F) to embeddings (N, D)"""

    def __init__(self, model, device=DEVICE):
        self.model = model.to(device)
        self.device = device

    @torch.no_grad()
    def __call__(self, features):
        X = torch.as_tensor(np.asarray(features, dtype=np.float32)).to(self.device)
        emb = self.model(X)
        return emb.cpu().numpy().astype(np.float64)


class TorchEdgeScorer(EdgeScorer):
    """
    Score edges with a model called as model(x, edge_index).

    The model returns one logit (or probability, with sigmoid=False) per edge.
    With edge_batch_size set, the edge list is sent in slices of that many
    edges, which suits the pairwise filter model; a GNN needs the whole graph
    and should leave it unset.
    """

    def __init__(self, model, device=DEVICE, sigmoid=True, edge_batch_size=None):
        self.model = model.to(device)
        self.device = device
        self.sigmoid = sigmoid
        self.edge_batch_size = edge_batch_size

    def _predict(self, x, edge_index):
        preds = self.model(x, edge_index)
        preds = preds.squeeze()
        if len(preds.shape) == 0:
            preds = preds.reshape(1)
        if self.sigmoid:
            preds = torch.sigmoid(preds)
        return preds.cpu()

    @torch.no_grad()
    def score(self, node_features, edges):
        x = torch.as_tensor(np.asarray(node_features, dtype=np.float32)).to(self.device)
        edge_index = torch.as_tensor(np.asarray(edges, dtype=np.int64)).to(self.device)

        batch_size = self.edge_batch_size or edge_index.shape[1]
        scores = [self._predict(x, edge_index[:, start:start + batch_size])
                  for start in range(0, edge_index.shape[1], batch_size)]
        return torch.cat(scores).numpy()
