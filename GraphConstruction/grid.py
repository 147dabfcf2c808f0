"""
Uniform spatial grid over the embedded spacepoints.

The grid spans the first three embedding axes. Points are bucketed by cell with
a counting sort: per-cell counts, an exclusive prefix sum of the counts gives the
offset of each cell's bucket, and a stable sort of the point indices by cell
fills the buckets (input order within a cell).
"""

# System
import logging
from collections import namedtuple

# Externals
import numpy as np

# Locals
from utils.errors import ConfigurationError

GRID_DIM = 3
RADIUS_CELL_RATIO = 2.0


class Grid(namedtuple('Grid', ['grid_min', 'cell_size', 'res', 'clamped',
                               'point_cell', 'cell_index', 'cell_count',
                               'cell_offset', 'sorted_idx'])):
    """
    Frozen grid built for one event.

    grid_min    -- lower corner of the bounding box, shape (3,)
    cell_size   -- edge length of a (cubic) cell
    res         -- number of cells along each grid axis, shape (3,)
    clamped     -- True if the resolution cap forced cells larger than radius / ratio
    point_cell  -- cell coordinates of every point, shape (N, 3)
    cell_index  -- flat cell index of every point, shape (N,)
    cell_count  -- number of points in each cell, shape (G,)
    cell_offset -- start of each cell's bucket in sorted_idx, shape (G,)
    sorted_idx  -- point indices grouped by cell, shape (N,)
    """
    __slots__ = ()

    @property
    def n_cells(self):
        return len(self.cell_count)

    @property
    def n_points(self):
        return len(self.sorted_idx)

    def cell_points(self, cell):
        start = self.cell_offset[cell]
        return self.sorted_idx[start:start + self.cell_count[cell]]

    def flat_index(self, coords):
        """Flatten integer cell coordinates of shape (..., 3)"""
        coords = np.asarray(coords, dtype=np.int64)
        return np.ravel_multi_index(tuple(np.moveaxis(coords, -1, 0)), tuple(self.res))

    def cell_range(self, points, radius):
        """Lowest and highest cell coordinates touched by the cube [p - r, p + r] around each point"""
        points = np.asarray(points)[:, :GRID_DIM]
        lo = np.floor((points - radius - self.grid_min) / self.cell_size).astype(np.int64)
        hi = np.floor((points + radius - self.grid_min) / self.cell_size).astype(np.int64)
        upper = self.res - 1
        return np.clip(lo, 0, upper), np.clip(hi, 0, upper)


def _freeze(*arrays):
    for a in arrays:
        a.setflags(write=False)


def build_grid(embeddings, radius, max_res, radius_cell_ratio=RADIUS_CELL_RATIO):
    """
    Bucket the embedded points into a uniform grid.

    The cell size is radius / radius_cell_ratio, unless that would need more than
    max_res cells along the longest side of the bounding box, in which case cells
    grow to span_max / max_res. Every axis therefore has at most max_res cells.
    """

    embeddings = np.asarray(embeddings, dtype=np.float64)
    if embeddings.ndim != 2 or embeddings.shape[1] < GRID_DIM:
        raise ConfigurationError('DIM < 3 is not supported for now (embedding shape %s)' % (embeddings.shape,))
    if not radius > 0:
        raise ConfigurationError('Grid radius must be > 0 (got %r)' % (radius,))
    if max_res < 1:
        raise ConfigurationError('Grid resolution cap must be >= 1 (got %r)' % (max_res,))
    if not radius_cell_ratio > 1:
        raise ConfigurationError('Radius to cell ratio must be > 1 (got %r)' % (radius_cell_ratio,))

    points = embeddings[:, :GRID_DIM]
    nb_points = len(points)

    # Set up grid properties
    if nb_points > 0:
        grid_min = points.min(axis=0)
        grid_size = points.max(axis=0) - grid_min
    else:
        grid_min = np.zeros(GRID_DIM)
        grid_size = np.zeros(GRID_DIM)

    cell_size = radius / radius_cell_ratio
    clamped = False
    if cell_size < grid_size.max() / max_res:
        cell_size = grid_size.max() / max_res
        clamped = True
        logging.warning('Grid resolution capped at %i cells per axis: cell size raised from %.4g to %.4g',
                        max_res, radius / radius_cell_ratio, cell_size)

    res = np.minimum(np.floor(grid_size / cell_size).astype(np.int64) + 1, max_res)
    nb_cells = int(np.prod(res))

    # Insert points
    point_cell = np.floor((points - grid_min) / cell_size).astype(np.int64)
    point_cell = np.clip(point_cell, 0, res - 1)
    cell_index = np.ravel_multi_index(tuple(point_cell.T), tuple(res)).astype(np.int64)
    cell_count = np.bincount(cell_index, minlength=nb_cells)

    # Prefix sum
    cell_offset = np.zeros(nb_cells, dtype=np.int64)
    np.cumsum(cell_count[:-1], out=cell_offset[1:])

    # Counting sort
    sorted_idx = np.argsort(cell_index, kind='stable')

    logging.debug('Built grid of %s cells (cell size %.4g) over %i points', 'x'.join(str(r) for r in res),
                  cell_size, nb_points)

    _freeze(grid_min, res, point_cell, cell_index, cell_count, cell_offset, sorted_idx)
    return Grid(grid_min=grid_min, cell_size=float(cell_size), res=res, clamped=clamped,
                point_cell=point_cell, cell_index=cell_index, cell_count=cell_count,
                cell_offset=cell_offset, sorted_idx=sorted_idx)
