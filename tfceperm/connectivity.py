"""
Connectivity models consumed by the TFCE integrators.

Two kinds of model are supported:

* connectors (`GridConnector`, `AdjacencyConnector`) label the elements
  exceeding a threshold into connected clusters, for spatial TFCE;
* a weighted connectivity matrix (`build_connectivity_matrix`) giving, for
  every element, the strength of its connection to each other element, for
  connectivity-based TFCE.

All models are immutable once built and are shared read-only between threads.
"""
import warnings

import numpy as np
from scipy import ndimage, sparse
from scipy.sparse.csgraph import connected_components

from .errors import ConfigurationError


def _drop_diagonal(matrix):
    """Return a canonical CSR copy of `matrix` without diagonal or zero entries."""
    coo = sparse.coo_matrix(matrix)
    keep = (coo.row != coo.col) & (coo.data != 0)
    matrix = sparse.csr_matrix(
        (coo.data[keep], (coo.row[keep], coo.col[keep])), shape=coo.shape
    )
    matrix.sum_duplicates()
    return matrix


def _cluster_sizes(labels, n_labels):
    """sizes[k - 1] is the number of elements carrying label k."""
    return np.bincount(labels, minlength=n_labels + 1)[1:]


class GridConnector:
    """
    Connected-component labelling over a regular voxel grid.

    Parameters
    ----------
    mask : array-like, shape (nx, ny[, nz, ...])
        Nonzero entries are the elements under test, enumerated in C order.
    connectivity : int, default 1
        Neighbourhood passed to `scipy.ndimage.generate_binary_structure`
        (1 = faces, 2 = faces + edges, 3 = faces + edges + corners in 3D).
    """

    def __init__(self, mask, connectivity=1):
        mask = np.asarray(mask) != 0
        if mask.ndim == 0:
            raise ConfigurationError("Mask must have at least one dimension")
        if not 1 <= connectivity <= mask.ndim:
            raise ConfigurationError(
                f"connectivity must be between 1 and {mask.ndim} for a {mask.ndim}D mask"
            )
        if not mask.any():
            raise ConfigurationError("Mask contains no elements")
        mask.setflags(write=False)
        self.mask = mask
        self.structure = ndimage.generate_binary_structure(mask.ndim, connectivity)
        self.n_elements = int(mask.sum())

    def label(self, stats, threshold):
        """
        Label elements with `stats > threshold` into connected clusters.

        Returns
        -------
        labels : np.ndarray of int, shape (n_elements,)
            0 for elements at or below threshold, otherwise 1-based cluster id.
        sizes : np.ndarray of int, shape (n_clusters,)
            Number of elements in each cluster.
        """
        volume = np.zeros(self.mask.shape, dtype=bool)
        volume[self.mask] = np.asarray(stats) > threshold
        labelled, n_labels = ndimage.label(volume, structure=self.structure)
        labels = labelled[self.mask]
        return labels, _cluster_sizes(labels, n_labels)


class AdjacencyConnector:
    """
    Connected-component labelling over an arbitrary undirected adjacency.

    Parameters
    ----------
    adjacency : scipy.sparse matrix or array-like, shape (n_elements, n_elements)
        Nonzero entries mark neighbouring elements. The pattern is symmetrised.
    """

    def __init__(self, adjacency):
        adjacency = sparse.csr_matrix(adjacency, dtype=float)
        if adjacency.ndim != 2 or adjacency.shape[0] != adjacency.shape[1]:
            raise ConfigurationError(
                f"Adjacency must be a square matrix, got shape {adjacency.shape}"
            )
        adjacency = abs(adjacency) + abs(adjacency.T)
        adjacency = _drop_diagonal(adjacency)
        adjacency.data[:] = 1
        self.adjacency = adjacency
        self.n_elements = adjacency.shape[0]

    def label(self, stats, threshold):
        """Same contract as `GridConnector.label`."""
        above = np.asarray(stats) > threshold
        labels = np.zeros(self.n_elements, dtype=np.intp)
        idx = np.flatnonzero(above)
        if idx.size == 0:
            return labels, np.zeros(0, dtype=np.intp)
        subgraph = self.adjacency[idx][:, idx]
        n_labels, components = connected_components(subgraph, directed=False)
        labels[idx] = components + 1
        return labels, _cluster_sizes(labels, n_labels)


def build_connectivity_matrix(connectivity_map, n_elements=None):
    """
    Build the weighted element-to-element connectivity used by connectivity TFCE.

    Parameters
    ----------
    connectivity_map : list of dict, scipy.sparse matrix or array-like
        Either one ``{neighbour_index: weight}`` dict per element, or a square
        matrix whose entry (i, j) is the weight of j as seen from i. The
        mapping may be asymmetric.
    n_elements : int or None
        Expected number of elements. Defaults to the size of the map.

    Returns
    -------
    connectivity : scipy.sparse.csr_matrix, shape (n_elements, n_elements)
        Read-only matrix with self-connections removed.

    Raises
    ------
    ConfigurationError
        For dangling neighbour references, a size mismatch, or negative or
        non-finite weights.
    """
    if isinstance(connectivity_map, (list, tuple)):
        n_rows = len(connectivity_map)
        if n_elements is None:
            n_elements = n_rows
        if n_rows != n_elements:
            raise ConfigurationError(
                f"Connectivity map has {n_rows} entries, expected {n_elements}"
            )
        rows, cols, weights = [], [], []
        for element, neighbours in enumerate(connectivity_map):
            for neighbour, weight in neighbours.items():
                neighbour = int(neighbour)
                if neighbour < 0 or neighbour >= n_elements:
                    raise ConfigurationError(
                        f"Element {element} references neighbour {neighbour}, "
                        f"outside 0..{n_elements - 1}"
                    )
                rows.append(element)
                cols.append(neighbour)
                weights.append(float(weight))
        matrix = sparse.csr_matrix(
            (np.asarray(weights, dtype=float), (rows, cols)),
            shape=(n_elements, n_elements),
        )
    else:
        matrix = sparse.csr_matrix(connectivity_map, dtype=float)
        if matrix.shape[0] != matrix.shape[1]:
            raise ConfigurationError(
                f"Connectivity matrix must be square, got shape {matrix.shape}"
            )
        if n_elements is not None and matrix.shape[0] != n_elements:
            raise ConfigurationError(
                f"Connectivity matrix has {matrix.shape[0]} elements, expected {n_elements}"
            )

    if not np.all(np.isfinite(matrix.data)):
        raise ConfigurationError("Connectivity weights must be finite")
    if np.any(matrix.data < 0):
        raise ConfigurationError("Connectivity weights must be non-negative")

    if matrix.diagonal().any():
        warnings.warn("Removing self-connections from connectivity map")
    matrix = _drop_diagonal(matrix)
    matrix.data.setflags(write=False)
    return matrix
