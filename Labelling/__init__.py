"""
Track labelling from classified edges.
"""

from .label import UnionFind, label_components, assemble_tracks, tracks_to_dataframe, save_labels
