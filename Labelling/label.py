"""
Track labelling: weakly connected components of the classified edge graph, and
conversion of component labels into track candidates of hit IDs.
"""

# System
import os
import logging

# Externals
import numpy as np
import pandas as pd


#################################################
#                   UNION-FIND                  #
#################################################

class UnionFind(object):
    """Disjoint sets over 0..n-1 with path compression and union by rank"""

    def __init__(self, n):
        self.parent = list(range(n))
        self.rank = [0] * n

    def __len__(self):
        return len(self.parent)

    def find(self, x):
        parent = self.parent
        root = x
        while parent[root] != root:
            root = parent[root]
        # Path compression
        while parent[x] != root:
            parent[x], x = root, parent[x]
        return root

    def union(self, a, b):
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1
        return ra

    def labels(self):
        return np.array([self.find(i) for i in range(len(self.parent))], dtype=np.int64)


def label_components(nb_points, edges):
    """
    Label the weakly connected components of the graph with nb_points nodes and
    a (2, E) edge list. Edges are merged in input order; only the partition is
    meaningful, not the label values.
    """
    edges = np.asarray(edges, dtype=np.int64).reshape(2, -1)
    if edges.size and (edges.min() < 0 or edges.max() >= nb_points):
        raise ValueError('Edge endpoints must lie in [0, %i)' % nb_points)

    dsu = UnionFind(nb_points)
    for a, b in zip(edges[0].tolist(), edges[1].tolist()):
        dsu.union(a, b)
    return dsu.labels()


#################################################
#                 TRACK BUILDING                #
#################################################

def assemble_tracks(labels, hit_ids, min_track_size=1):
    """
    Group hit IDs by component label. Tracks are numbered in the order their
    label is first met when scanning the hits, and keep the hit order within a
    track. Tracks with fewer than min_track_size hits are dropped.
    """
    labels = np.asarray(labels)
    hit_ids = np.asarray(hit_ids)
    if labels.shape != hit_ids.shape:
        raise ValueError('Got %i labels for %i hits' % (labels.size, hit_ids.size))

    label_to_track = {}
    tracks = []
    for label, hit_id in zip(labels.tolist(), hit_ids.tolist()):
        track_id = label_to_track.get(label)
        if track_id is None:
            # a new track, assign the next track id
            track_id = len(tracks)
            label_to_track[label] = track_id
            tracks.append([])
        tracks[track_id].append(hit_id)

    if min_track_size > 1:
        nb_before = len(tracks)
        tracks = [track for track in tracks if len(track) >= min_track_size]
        logging.debug('Dropped %i track candidates below %i hits', nb_before - len(tracks), min_track_size)
    return tracks


def tracks_to_dataframe(tracks):
    """One row per hit, with columns hit_id and track_id"""
    track_sizes = np.array([len(t) for t in tracks], dtype=np.int64)
    track_ids = np.repeat(np.arange(len(tracks), dtype=np.int64), track_sizes)
    hit_ids = np.array([hit_id for track in tracks for hit_id in track], dtype=np.int64)
    return pd.DataFrame({'hit_id': hit_ids, 'track_id': track_ids})


def save_labels(tracks, event_name, output_dir):
    label_filename = os.path.join(output_dir, event_name + '.csv')
    tracks_to_dataframe(tracks).to_csv(label_filename, index=False)
    return label_filename
