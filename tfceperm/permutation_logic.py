import threading
import warnings
from collections import namedtuple
from math import factorial

import numpy as np
from tqdm import tqdm

from .errors import ConfigurationError, ResourceExhaustion


PermutationItem = namedtuple("PermutationItem", ["index", "labelling"])


def _within_block_permutation(original_indices, block_ids, rng):
    """Shuffle subject indices within each exchangeability block."""
    permuted_indices = np.copy(original_indices)
    unique_blocks, inverse = np.unique(block_ids, return_inverse=True)
    for i in range(len(unique_blocks)):
        mask = inverse == i
        permuted_indices[mask] = rng.permutation(original_indices[mask])
    return permuted_indices


_MAX_DUPLICATE_DRAWS = 1000


def _n_distinct_orderings(n_subjects, block_ids=None, limit=None):
    """Number of distinct labellings, or None once it exceeds `limit`."""
    if block_ids is None:
        counts = [n_subjects]
    else:
        _, counts = np.unique(block_ids, return_counts=True)
    n = 1
    for count in counts:
        n *= factorial(int(count))
        if limit is not None and n > limit:
            return None
    return n


def check_permutations(permutations, n_permutations, n_subjects):
    """Validate precomputed labellings and return them as a read-only array.

    Raises:
        ConfigurationError: If the shape is not (n_permutations + 1, n_subjects),
            the first row is not the identity, or a row is not a permutation.
    """
    permutations = np.array(permutations, dtype=np.intp)
    if permutations.ndim != 2 or permutations.shape != (n_permutations + 1, n_subjects):
        raise ConfigurationError(
            f"Precomputed permutations must have shape "
            f"({n_permutations + 1}, {n_subjects}), got {permutations.shape}"
        )
    if not np.array_equal(permutations[0], np.arange(n_subjects)):
        raise ConfigurationError(
            "The first precomputed permutation must be the identity labelling"
        )
    if np.any(np.sort(permutations, axis=1) != np.arange(n_subjects)):
        raise ConfigurationError(
            "Every precomputed labelling must be a permutation of the subjects"
        )
    permutations.setflags(write=False)
    return permutations


def generate_permutations(
    n_permutations,
    n_subjects,
    random_state=42,
    exchangeability_blocks=None,
):
    """Generate the full set of subject labellings for a permutation test.

    Row 0 is always the identity labelling (the observed data). Rows
    1..n_permutations are random relabellings, unique and distinct from the
    identity whenever enough distinct orderings exist.

    Args:
        n_permutations (int): Number of random permutations (excluding the
            identity). Zero yields only the identity row.
        n_subjects (int): Number of subjects to relabel.
        random_state (int or np.random.Generator or None): Seed or Generator
            for the random number generator.
        exchangeability_blocks (np.ndarray or None): 1D vector of block ids,
            one per subject. If given, subjects are only shuffled within their
            own block.

    Returns:
        np.ndarray: Integer array of shape (n_permutations + 1, n_subjects).

    Raises:
        ConfigurationError: If counts are negative/zero or the blocks do not
            match the number of subjects.
        ResourceExhaustion: If the labelling array cannot be allocated.
    """
    if not isinstance(n_subjects, (int, np.integer)) or n_subjects <= 0:
        raise ConfigurationError("Number of subjects must be a positive integer")
    if not isinstance(n_permutations, (int, np.integer)) or n_permutations < 0:
        raise ConfigurationError("Number of permutations must be a non-negative integer")

    block_ids = None
    if exchangeability_blocks is not None:
        block_ids = np.ravel(np.asarray(exchangeability_blocks))
        if block_ids.shape[0] != n_subjects:
            raise ConfigurationError(
                f"Exchangeability blocks length ({block_ids.shape[0]}) must match "
                f"number of subjects ({n_subjects})"
            )

    if isinstance(random_state, np.random.Generator):
        rng = random_state
    else:
        rng = np.random.default_rng(random_state)

    try:
        permutations = np.empty((n_permutations + 1, n_subjects), dtype=np.intp)
    except MemoryError as e:
        raise ResourceExhaustion(
            f"Cannot allocate {n_permutations + 1} labellings of {n_subjects} subjects"
        ) from e

    original_indices = np.arange(n_subjects)
    permutations[0] = original_indices

    # Only enforce uniqueness when enough distinct non-identity orderings exist
    n_orderings = _n_distinct_orderings(n_subjects, block_ids, limit=n_permutations + 1)
    n_available = None if n_orderings is None else n_orderings - 1
    require_unique = n_available is None or n_available >= n_permutations
    if not require_unique:
        warnings.warn(
            f"Only {n_available} distinct relabellings exist for {n_permutations} "
            "requested permutations. Some permutations will be repeated."
        )

    seen = {tuple(original_indices)}
    duplicate_draws = 0
    i = 1
    while i <= n_permutations:
        if block_ids is None:
            candidate = rng.permutation(original_indices)
        else:
            candidate = _within_block_permutation(original_indices, block_ids, rng)
        if require_unique:
            key = tuple(candidate)
            if key in seen:
                duplicate_draws += 1
                if duplicate_draws >= _MAX_DUPLICATE_DRAWS:
                    warnings.warn(
                        f"No new relabelling found after {duplicate_draws} draws. "
                        "Remaining permutations may be repeated."
                    )
                    require_unique = False
                continue
            seen.add(key)
            duplicate_draws = 0
        permutations[i] = candidate
        i += 1

    return permutations


class PermutationSource:
    """
    Hands out permutation labellings one work item at a time.

    All labellings are generated up front so that every consumer observes the
    same finite sequence. Items are produced in increasing index order starting
    at 0 (the unpermuted labelling); after the last one `next_item` returns None.
    Safe to call from several threads.
    """

    def __init__(
        self,
        n_permutations,
        n_subjects,
        random_state=42,
        exchangeability_blocks=None,
        permutations=None,
        show_progress=False,
    ):
        if permutations is None:
            permutations = generate_permutations(
                n_permutations,
                n_subjects,
                random_state=random_state,
                exchangeability_blocks=exchangeability_blocks,
            )
            permutations.setflags(write=False)
        else:
            permutations = check_permutations(permutations, n_permutations, n_subjects)

        self.n_permutations = n_permutations
        self.n_subjects = n_subjects
        self.permutations = permutations
        self.n_produced = 0
        self._lock = threading.Lock()
        self._progress = (
            tqdm(
                total=len(permutations),
                desc=f"Running {n_permutations} permutations",
                leave=False,
            )
            if show_progress
            else None
        )

    def __len__(self):
        return len(self.permutations)

    def next_item(self):
        """Return the next PermutationItem, or None once exhausted."""
        with self._lock:
            if self.n_produced >= len(self.permutations):
                return None
            index = self.n_produced
            self.n_produced += 1
            if self._progress is not None:
                self._progress.update(1)
        return PermutationItem(index=index, labelling=self.permutations[index])

    def __iter__(self):
        while True:
            item = self.next_item()
            if item is None:
                return
            yield item

    def close(self):
        if self._progress is not None:
            self._progress.close()
            self._progress = None
