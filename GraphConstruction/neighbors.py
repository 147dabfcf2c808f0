"""
Fixed-radius k-nearest-neighbour graph in the embedding space.

Each spacepoint is connected to at most k points within the radius, ranked by
distance (ties go to the lower hit ID). The directed neighbour lists are then
turned into an undirected edge list: self-loops are dropped, every pair is
written as (min, max) and only the first occurrence of a pair is kept.

Candidate pairs are expanded in batches of at most max_rows rows, and the
candidates within the radius are merged into the k-nearest lists of the chunk
whenever more than max_rows of them are pending, so memory stays
bounded on densely populated cells.
"""

# System
import logging
from functools import partial
from itertools import product
from multiprocessing.pool import ThreadPool

# Externals
import numpy as np

# Locals
from utils.errors import ConfigurationError
from .grid import build_grid, GRID_DIM, RADIUS_CELL_RATIO

MAX_ROWS = 2 ** 20


def empty_edges():
    return np.empty((2, 0), dtype=np.int64)


def _squared_distance(columns, a, b):
    """Squared distances between points a and b, summed one axis at a time.
    columns is the (D, N) transpose of the embeddings."""
    d2 = np.zeros(len(a))
    for x in columns:
        diff = x[a] - x[b]
        d2 += diff * diff
    return d2


def _select_nearest(src, dst, dist2, hit_ids, max_neighbors):
    """Keep the max_neighbors closest candidates of every source point.
    Output is ordered by source point, then by rank."""

    order = np.lexsort((dst, hit_ids[dst], dist2, src))
    src, dst, dist2 = src[order], dst[order], dist2[order]
    if len(src) == 0:
        return src, dst, dist2

    group_start = np.flatnonzero(np.r_[True, src[1:] != src[:-1]])
    group_size = np.diff(np.r_[group_start, len(src)])
    rank = np.arange(len(src)) - np.repeat(group_start, group_size)
    keep = rank < max_neighbors
    return src[keep], dst[keep], dist2[keep]


def _row_batches(counts, max_rows):
    """
    Split consecutive (query, cell) pairs into slices holding at most max_rows
    candidate rows. A pair with more than max_rows rows gets a slice of its own.
    """
    ends = np.cumsum(counts)
    start = 0
    while start < len(counts):
        base = ends[start - 1] if start else 0
        stop = max(int(np.searchsorted(ends, base + max_rows, side='right')), start + 1)
        yield slice(start, stop)
        start = stop


def _search_chunk(bounds, grid, embeddings, columns, hit_ids, radius, max_neighbors, max_rows=MAX_ROWS):
    """Neighbour search for the query points in range(*bounds). Reads the grid only."""

    start, stop = bounds
    queries = np.arange(start, stop)
    r2 = radius * radius
    lo, hi = grid.cell_range(embeddings[queries], radius)

    # Candidates within the radius, merged into k-nearest lists once more
    # than max_rows of them are pending
    src = [np.empty(0, dtype=np.int64)]
    dst = [np.empty(0, dtype=np.int64)]
    dist2 = [np.empty(0, dtype=np.float64)]
    pending = 0

    # Visit each cell offset inside the widest [lo, hi] box of the chunk
    widths = (hi - lo).max(axis=0) + 1
    for offset in product(*[range(w) for w in widths]):
        cells = lo + np.array(offset, dtype=np.int64)
        valid = np.flatnonzero((cells <= hi).all(axis=1))
        if len(valid) == 0:
            continue
        cell = grid.flat_index(cells[valid])
        counts = grid.cell_count[cell]
        keep = counts > 0
        valid, cell, counts = valid[keep], cell[keep], counts[keep]

        for batch in _row_batches(counts, max_rows):
            # Expand every (query, cell) pair into one row per point of the cell
            b_valid, b_cell, b_counts = valid[batch], cell[batch], counts[batch]
            total = b_counts.sum()
            local_start = np.cumsum(b_counts) - b_counts
            positions = np.arange(total) + np.repeat(grid.cell_offset[b_cell] - local_start, b_counts)
            q = queries[np.repeat(b_valid, b_counts)]
            c = grid.sorted_idx[positions]

            d2 = _squared_distance(columns, q, c)
            within = np.flatnonzero(d2 <= r2)
            src.append(q[within])
            dst.append(c[within])
            dist2.append(d2[within])
            pending += len(within)
            if pending > max_rows:
                src, dst, dist2 = [[a] for a in _select_nearest(np.concatenate(src), np.concatenate(dst),
                                                                np.concatenate(dist2), hit_ids, max_neighbors)]
                pending = 0

    src, dst, _ = _select_nearest(np.concatenate(src), np.concatenate(dst), np.concatenate(dist2),
                                  hit_ids, max_neighbors)
    return src, dst


def remove_duplicate_edges(src, dst, nb_points):
    """
    Drop self-loops, write every pair as (min, max) and keep the first occurrence
    of each pair. Returns a (2, E) edge array.
    """
    src = np.asarray(src, dtype=np.int64)
    dst = np.asarray(dst, dtype=np.int64)

    # Remove self-loops
    not_loop = src != dst
    e = np.vstack([src[not_loop], dst[not_loop]])
    if e.shape[1] == 0:
        return empty_edges()

    # Canonical direction
    e = np.sort(e, axis=0)

    # Remove duplicates, keeping emission order
    _, first = np.unique(e[0] * nb_points + e[1], return_index=True)
    first.sort()
    return e[:, first]


def _check_inputs(embeddings, hit_ids, max_neighbors):
    embeddings = np.asarray(embeddings, dtype=np.float64)
    if embeddings.ndim != 2 or embeddings.shape[1] < GRID_DIM:
        raise ConfigurationError('DIM < 3 is not supported for now (embedding shape %s)' % (embeddings.shape,))
    if hit_ids is None:
        hit_ids = np.arange(len(embeddings), dtype=np.int64)
    hit_ids = np.asarray(hit_ids, dtype=np.int64)
    if hit_ids.shape != (len(embeddings),):
        raise ValueError('Got %i hit IDs for %i embedded points' % (hit_ids.size, len(embeddings)))
    if max_neighbors < 1:
        raise ConfigurationError('max_neighbors must be >= 1 (got %r)' % (max_neighbors,))
    return embeddings, hit_ids


def build_edges(grid, embeddings, hit_ids, radius, max_neighbors, chunk_size=4096, n_workers=1,
                max_rows=MAX_ROWS):
    """
    Build the undirected candidate edge list using a prebuilt grid.

    Query points are processed in chunks. With n_workers > 1 the chunks are spread
    over a thread pool; every chunk only reads the frozen grid, and the chunk
    outputs are joined in order so the edge list does not depend on n_workers.
    max_rows caps the candidate rows a chunk expands at once.
    """

    embeddings, hit_ids = _check_inputs(embeddings, hit_ids, max_neighbors)
    if max_rows < 1:
        raise ConfigurationError('max_rows must be >= 1 (got %r)' % (max_rows,))
    nb_points = len(embeddings)
    if grid.n_points != nb_points:
        raise ValueError('Grid holds %i points but %i were given' % (grid.n_points, nb_points))
    if nb_points == 0:
        return empty_edges()

    columns = np.ascontiguousarray(embeddings.T)
    chunks = [(start, min(start + chunk_size, nb_points)) for start in range(0, nb_points, chunk_size)]
    search_fn = partial(_search_chunk, grid=grid, embeddings=embeddings, columns=columns, hit_ids=hit_ids,
                        radius=radius, max_neighbors=max_neighbors, max_rows=max_rows)
    if n_workers > 1 and len(chunks) > 1:
        with ThreadPool(processes=n_workers) as pool:
            results = pool.map(search_fn, chunks)
    else:
        results = [search_fn(chunk) for chunk in chunks]

    src = np.concatenate([r[0] for r in results])
    dst = np.concatenate([r[1] for r in results])
    logging.debug('Found %i directed neighbour pairs', len(src))

    edges = remove_duplicate_edges(src, dst, nb_points)
    logging.debug('Built %i undirected edges', edges.shape[1])
    return edges


def build_neighbor_graph(embeddings, hit_ids, radius, max_neighbors, max_res,
                         radius_cell_ratio=RADIUS_CELL_RATIO, chunk_size=4096, n_workers=1,
                         max_rows=MAX_ROWS):
    """Build the grid, then the edge list. Returns (edges, grid)."""
    embeddings, hit_ids = _check_inputs(embeddings, hit_ids, max_neighbors)
    grid = build_grid(embeddings, radius, max_res, radius_cell_ratio)
    edges = build_edges(grid, embeddings, hit_ids, radius, max_neighbors,
                        chunk_size=chunk_size, n_workers=n_workers, max_rows=max_rows)
    return edges, grid


def radius_graph_brute_force(embeddings, hit_ids, radius, max_neighbors):
    """Quadratic reference for build_edges. Same selection and deduplication rules."""

    embeddings, hit_ids = _check_inputs(embeddings, hit_ids, max_neighbors)
    nb_points = len(embeddings)
    if nb_points == 0:
        return empty_edges()

    columns = np.ascontiguousarray(embeddings.T)
    everyone = np.arange(nb_points)
    r2 = radius * radius
    src, dst, dist2 = [], [], []
    for i in range(nb_points):
        d2 = _squared_distance(columns, np.full(nb_points, i), everyone)
        within = np.flatnonzero(d2 <= r2)
        src.append(np.full(len(within), i, dtype=np.int64))
        dst.append(within)
        dist2.append(d2[within])

    src, dst, _ = _select_nearest(np.concatenate(src), np.concatenate(dst), np.concatenate(dist2),
                                  hit_ids, max_neighbors)
    return remove_duplicate_edges(src, dst, nb_points)
