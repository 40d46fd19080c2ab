import queue
import threading
import warnings
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from sklearn.utils import Bunch

from .connectivity import AdjacencyConnector, GridConnector
from .errors import ComputationFailure, ConfigurationError, ResourceExhaustion
from .permutation_logic import PermutationSource, check_permutations, generate_permutations
from .stats import GLMTTest
from .tfce import GraphIntegrator, SpatialIntegrator, calculate_auto_dh

# Marks the end of the work stream; one is queued per worker thread.
_END_OF_STREAM = object()


class ResultAggregator:
    """
    Pre-allocated output buffers shared by all worker threads.

    Slot ownership is fixed by the work item index: index 0 owns the observed
    maps, index i >= 1 owns slot i - 1 of both permutation distributions.
    Because the indices handed out by the PermutationSource partition
    {0..n_permutations}, writers never share a slot and no lock is taken.
    Each slot is claimed on first write; a second write is an error.
    """

    def __init__(self, n_elements, n_permutations):
        try:
            self.observed_statistic = np.zeros(n_elements)
            self.tfce_observed_pos = np.zeros(n_elements)
            self.tfce_observed_neg = np.zeros(n_elements)
            self.perm_distribution_pos = np.zeros(n_permutations)
            self.perm_distribution_neg = np.zeros(n_permutations)
            self._permutation_written = np.zeros(n_permutations, dtype=bool)
        except MemoryError as e:
            raise ResourceExhaustion(
                f"Cannot allocate output buffers for {n_elements} elements "
                f"and {n_permutations} permutations"
            ) from e
        self.n_elements = n_elements
        self.n_permutations = n_permutations
        self._observed_written = False

    def record_observed(self, stats, tfce_pos, tfce_neg):
        if self._observed_written:
            raise RuntimeError("Observed slot (index 0) written more than once")
        self._observed_written = True
        self.observed_statistic[:] = stats
        self.tfce_observed_pos[:] = tfce_pos
        self.tfce_observed_neg[:] = tfce_neg

    def record_permutation(self, index, max_tfce_pos, max_tfce_neg):
        if not 1 <= index <= self.n_permutations:
            raise IndexError(
                f"Permutation index {index} outside 1..{self.n_permutations}"
            )
        slot = index - 1
        if self._permutation_written[slot]:
            raise RuntimeError(f"Permutation slot {slot} written more than once")
        self._permutation_written[slot] = True
        self.perm_distribution_pos[slot] = max_tfce_pos
        self.perm_distribution_neg[slot] = max_tfce_neg

    def is_complete(self):
        return self._observed_written and bool(np.all(self._permutation_written))

    def finalize(self):
        if not self.is_complete():
            n_missing = int(np.sum(~self._permutation_written)) + (
                0 if self._observed_written else 1
            )
            raise ComputationFailure(
                f"{n_missing} work items were never completed; results are incomplete"
            )
        return Bunch(
            stat=self.observed_statistic,
            tfce_pos=self.tfce_observed_pos,
            tfce_neg=self.tfce_observed_neg,
            tfce_max_dist_pos=self.perm_distribution_pos,
            tfce_max_dist_neg=self.perm_distribution_neg,
        )


def _check_calculator_output(result, n_elements, index):
    try:
        stats, max_stat, min_stat = result
        stats = np.ravel(np.asarray(stats, dtype=float))
        max_stat = float(max_stat)
        min_stat = float(min_stat)
    except (TypeError, ValueError) as e:
        raise ComputationFailure(
            f"Stat function returned a malformed result for permutation {index}; "
            "expected (stats, max, min)"
        ) from e
    if stats.shape[0] != n_elements:
        raise ComputationFailure(
            f"Stat function returned unexpected shape {stats.shape} for permutation "
            f"{index}, expected ({n_elements},)"
        )
    if not (np.isfinite(max_stat) and np.isfinite(min_stat)):
        raise ComputationFailure(
            f"Stat function returned non-finite bounds for permutation {index}: "
            f"max={max_stat}, min={min_stat}"
        )
    return stats, max_stat, min_stat


class PermutationWorker:
    """
    Computes one work item: statistics, positive and sign-flipped TFCE, and the
    write into the work item's own slot of the ResultAggregator.
    """

    def __init__(self, stats_calculator, integrator, aggregator, stop_event=None):
        self.stats_calculator = stats_calculator
        self.integrator = integrator
        self.aggregator = aggregator
        self.stop_event = stop_event if stop_event is not None else threading.Event()

    def process(self, item):
        """Return False without computing if the run was asked to stop."""
        if self.stop_event.is_set():
            return False

        try:
            result = self.stats_calculator(item.labelling)
        except Exception as e:
            raise ComputationFailure(
                f"Stat function failed for permutation {item.index}: {e}"
            ) from e
        stats, max_stat, min_stat = _check_calculator_output(
            result, self.integrator.n_elements, item.index
        )

        tfce_pos, max_tfce_pos = self.integrator.integrate(max_stat, stats)
        # The integrator zeroes a fresh accumulator on every call
        tfce_neg, max_tfce_neg = self.integrator.integrate(-min_stat, -stats)

        if item.index == 0:
            self.aggregator.record_observed(stats, tfce_pos, tfce_neg)
        else:
            self.aggregator.record_permutation(item.index, max_tfce_pos, max_tfce_neg)
        return True


def compute_fwe_p_values(observed, max_distribution):
    """
    Family-wise error corrected p-values from a max-statistic distribution.

    p = (#{max_distribution >= observed} + 1) / (n_permutations + 1)
    """
    observed = np.asarray(observed, dtype=float)
    sorted_dist = np.sort(np.asarray(max_distribution, dtype=float))
    n_permutations = sorted_dist.shape[0]
    n_exceed = n_permutations - np.searchsorted(sorted_dist, observed, side="left")
    return (n_exceed + 1.0) / (n_permutations + 1.0)


def process_p_values(p_values, save_1minusp=False, save_neglog10p=False):
    if save_1minusp and save_neglog10p:
        raise ValueError("Only one of save_1minusp/save_neglog10p may be True")

    def _neglog(p):
        with np.errstate(divide="ignore"):
            out = -np.log10(p)
        if np.any(np.isnan(out)):
            warnings.warn("NaN produced by -log10(p)", RuntimeWarning)
        return out

    fn = (
        (lambda p: 1 - p)
        if save_1minusp
        else _neglog if save_neglog10p else (lambda p: p)
    )

    is_single = not isinstance(p_values, (list, tuple))
    inputs = (p_values,) if is_single else p_values

    results = tuple(fn(np.asarray(p)) for p in inputs)
    return results[0] if is_single else results


def _check_positive_int(value, name):
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return int(value)


class TfceEngine:
    """
    Permutation TFCE engine.

    A fixed pool of worker threads consumes work items from a bounded queue
    fed by a PermutationSource. Every item is run through the stats calculator
    and the integrator for both contrast signs, and its results are written
    into the slot owned by its index.

    Parameters
    ----------
    stats_calculator : callable
        ``stats_calculator(labelling) -> (stats, max_stat, min_stat)``.
    integrator : SpatialIntegrator or GraphIntegrator
        Any object with ``integrate(max_stat, stats)`` and ``n_elements``.
    n_permutations : int, default 1000
        Number of random permutations, excluding the observed labelling.
    n_subjects : int or None
        Length of a labelling. Defaults to ``stats_calculator.n_subjects``.
    n_workers : int, default 1
        Number of worker threads.
    queue_capacity : int or None
        Maximum number of queued work items. Defaults to ``2 * n_workers``.
    random_state : int, default 42
        Seed for reproducibility.
    exchangeability_blocks : np.ndarray or None
        Block id per subject; subjects are only permuted within their block.
    permutations : np.ndarray or None
        Precomputed labellings, shape (n_permutations + 1, n_subjects), row 0
        the identity. Overrides `random_state` and `exchangeability_blocks`.
    show_progress : bool, default True
        Print a status line and show a progress bar.
    save_1minusp : bool, default False
        If True, store 1–p instead of raw p-values.
    save_neglog10p : bool, default False
        If True, store –log₁₀(p) instead of raw p-values.
    """

    def __init__(
        self,
        stats_calculator,
        integrator,
        n_permutations=1000,
        n_subjects=None,
        n_workers=1,
        queue_capacity=None,
        random_state=42,
        exchangeability_blocks=None,
        permutations=None,
        show_progress=True,
        save_1minusp=False,
        save_neglog10p=False,
    ):
        if not callable(stats_calculator):
            raise ConfigurationError("stats_calculator must be callable")
        if not hasattr(integrator, "integrate") or not hasattr(integrator, "n_elements"):
            raise ConfigurationError(
                "integrator must provide integrate(max_stat, stats) and n_elements"
            )
        self.n_permutations = _check_positive_int(n_permutations, "n_permutations")

        if n_subjects is None:
            n_subjects = getattr(stats_calculator, "n_subjects", None)
            if n_subjects is None:
                raise ConfigurationError(
                    "n_subjects must be given when the stats calculator does not expose it"
                )
        self.n_subjects = _check_positive_int(n_subjects, "n_subjects")
        calculator_subjects = getattr(stats_calculator, "n_subjects", None)
        if calculator_subjects is not None and calculator_subjects != self.n_subjects:
            raise ConfigurationError(
                f"n_subjects ({self.n_subjects}) does not match the stats calculator "
                f"({calculator_subjects})"
            )
        calculator_elements = getattr(stats_calculator, "n_elements", None)
        if calculator_elements is not None and calculator_elements != integrator.n_elements:
            raise ConfigurationError(
                f"Stats calculator produces {calculator_elements} elements but the "
                f"connectivity model has {integrator.n_elements}"
            )

        self.n_workers = _check_positive_int(n_workers, "n_workers")
        if queue_capacity is None:
            queue_capacity = 2 * self.n_workers
        self.queue_capacity = _check_positive_int(queue_capacity, "queue_capacity")
        if save_1minusp and save_neglog10p:
            raise ConfigurationError("Only one of save_1minusp/save_neglog10p may be True")

        self.stats_calculator = stats_calculator
        self.integrator = integrator
        self.show_progress = show_progress
        self.save_1minusp = save_1minusp
        self.save_neglog10p = save_neglog10p

        if permutations is None:
            permutations = generate_permutations(
                self.n_permutations,
                self.n_subjects,
                random_state=random_state,
                exchangeability_blocks=exchangeability_blocks,
            )
        self.permutations = check_permutations(
            permutations, self.n_permutations, self.n_subjects
        )
        self._aggregator = ResultAggregator(integrator.n_elements, self.n_permutations)

    def run(self):
        """
        Run all permutations and return the results.

        Returns
        -------
        results : sklearn.utils.Bunch
            `stat`, `tfce_pos`, `tfce_neg` (observed maps), `tfce_max_dist_pos`,
            `tfce_max_dist_neg` (max-TFCE null distributions) and
            `tfce_fwep_pos`, `tfce_fwep_neg` (FWE-corrected p-values).

        Raises
        ------
        ComputationFailure
            If any work item failed. No partial results are returned.
        """
        aggregator = self._aggregator
        if aggregator is None:
            aggregator = ResultAggregator(self.integrator.n_elements, self.n_permutations)
        self._aggregator = None

        source = PermutationSource(
            self.n_permutations,
            self.n_subjects,
            permutations=self.permutations,
            show_progress=self.show_progress,
        )
        stop_event = threading.Event()
        work_queue = queue.Queue(maxsize=self.queue_capacity)
        worker = PermutationWorker(
            self.stats_calculator, self.integrator, aggregator, stop_event
        )
        failures = []
        failure_lock = threading.Lock()

        def consume():
            # After a failure, keep draining the queue so the producer never blocks
            while True:
                item = work_queue.get()
                try:
                    if item is _END_OF_STREAM:
                        return
                    worker.process(item)
                except Exception as e:
                    with failure_lock:
                        failures.append(e)
                    stop_event.set()
                finally:
                    work_queue.task_done()

        if self.show_progress:
            print(
                f"--- Running {self.n_permutations} permutations on "
                f"{self.n_workers} worker thread(s) ---"
            )

        with ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="tfce-worker"
        ) as executor:
            futures = [executor.submit(consume) for _ in range(self.n_workers)]
            try:
                while not stop_event.is_set():
                    item = source.next_item()
                    if item is None:
                        break
                    work_queue.put(item)
            finally:
                for _ in range(self.n_workers):
                    work_queue.put(_END_OF_STREAM)
                source.close()
            for future in futures:
                future.result()

        if failures:
            first = failures[0]
            message = f"Permutation run aborted: {first}"
            if len(failures) > 1:
                message += f" ({len(failures)} work items failed)"
            raise ComputationFailure(message) from first

        results = aggregator.finalize()
        fwep_pos, fwep_neg = process_p_values(
            (
                compute_fwe_p_values(results.tfce_pos, results.tfce_max_dist_pos),
                compute_fwe_p_values(results.tfce_neg, results.tfce_max_dist_neg),
            ),
            save_1minusp=self.save_1minusp,
            save_neglog10p=self.save_neglog10p,
        )
        results.tfce_fwep_pos = fwep_pos
        results.tfce_fwep_neg = fwep_neg
        return results


def permutation_analysis_tfce(
    data,
    design,
    contrast,
    connectivity,
    n_permutations=1000,
    dh=0.1,
    E=None,
    H=None,
    n_workers=1,
    queue_capacity=None,
    random_state=42,
    exchangeability_blocks=None,
    show_progress=True,
    save_1minusp=False,
    save_neglog10p=False,
    max_abs_stat=1000.0,
):
    """
    Perform permutation-based TFCE inference on a GLM t-contrast.

    Parameters
    ----------
    data : np.ndarray, shape (n_subjects, n_elements)
        Observations matrix: rows are subjects, columns are voxels/vertices/fixels.
    design : np.ndarray, shape (n_subjects, n_regressors)
        Design matrix for the GLM.
    contrast : np.ndarray, shape (n_regressors,)
        Contrast vector.
    connectivity : GridConnector, AdjacencyConnector, list of dict or matrix
        A connector selects spatial TFCE (cluster size extent); a weighted
        connectivity map or matrix selects connectivity-based TFCE.
    n_permutations : int, default 1000
        Number of permutations to generate null distributions.
    dh : float or 'auto', default 0.1
        TFCE step height. 'auto' uses 1/100 of the largest observed |t|.
    E, H : float or None
        Extent and height exponents. Default to 0.5/2.0 for spatial TFCE and
        2.0/3.0 for connectivity-based TFCE.
    n_workers : int, default 1
        Number of worker threads.
    queue_capacity : int or None
        Bound of the work queue. Defaults to ``2 * n_workers``.
    random_state : int, default 42
        Seed for reproducibility.
    exchangeability_blocks : np.ndarray or None
        Block id per subject; subjects are only permuted within their block.
    show_progress : bool, default True
        Print a status line and show a progress bar.
    save_1minusp : bool, default False
        If True, store 1–p instead of raw p-values.
    save_neglog10p : bool, default False
        If True, store –log₁₀(p) instead of raw p-values.
    max_abs_stat : float, default 1000.0
        Bound on |t|, see `GLMTTest`.

    Returns
    -------
    results : sklearn.utils.Bunch
        See `TfceEngine.run`.
    """
    stats_calculator = GLMTTest(data, design, contrast, max_abs_stat=max_abs_stat)

    if isinstance(dh, str):
        if dh != "auto":
            raise ConfigurationError("dh must be a positive number or 'auto'")
        observed_stats, _, _ = stats_calculator(np.arange(stats_calculator.n_subjects))
        dh = calculate_auto_dh(observed_stats, two_tailed=True)
        if dh <= 0:
            warnings.warn(
                "Observed statistics have no positive range; falling back to dh=0.1"
            )
            dh = 0.1

    if isinstance(connectivity, (GridConnector, AdjacencyConnector)):
        integrator = SpatialIntegrator(
            connectivity,
            dh=dh,
            E=0.5 if E is None else E,
            H=2.0 if H is None else H,
        )
    else:
        integrator = GraphIntegrator(
            connectivity,
            dh=dh,
            E=2.0 if E is None else E,
            H=3.0 if H is None else H,
        )

    engine = TfceEngine(
        stats_calculator,
        integrator,
        n_permutations=n_permutations,
        n_workers=n_workers,
        queue_capacity=queue_capacity,
        random_state=random_state,
        exchangeability_blocks=exchangeability_blocks,
        show_progress=show_progress,
        save_1minusp=save_1minusp,
        save_neglog10p=save_neglog10p,
    )
    return engine.run()
