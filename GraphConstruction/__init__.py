"""
Graph construction in the learned embedding space: grid indexing and radius neighbours.
"""

from .grid import build_grid, Grid
from .neighbors import build_edges, build_neighbor_graph, radius_graph_brute_force, remove_duplicate_edges
