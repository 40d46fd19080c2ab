import jax.numpy as jnp
from jax import jit
from jax.numpy.linalg import pinv
import numpy as np

from .errors import ConfigurationError

"""
Statistics calculators: map a subject labelling to one statistic per element.
"""


@jit
def t(Y, X, C):
    """
    Compute GLM t‐statistics for a single contrast.

    Parameters
    ----------
    Y : array, (n, p)
        Response data.
    X : array, (n, k)
        Design matrix.
    C : array, (k,)
        Contrast vector.

    Returns
    -------
    t_vals : array, (p,)
        t = (Cᵀβ) / SE, where
          β = (XᵀX)⁻¹ Xᵀ Y,
          df = n − k,
          MSE = ∑(resid²)/df,
          var_C = Cᵀ(XᵀX)⁻¹ C,
          SE = √(var_C · MSE).
    df : int
        Residual degrees of freedom.

    Notes
    -----
    0/0→0, k/0→±∞.
    """
    n, p = Y.shape
    C = jnp.ravel(C)
    k = X.shape[1]
    XtX_inv = pinv(X.T @ X)
    beta = XtX_inv @ X.T @ Y
    resid = Y - X @ beta
    df = n - k
    mse = jnp.maximum(jnp.sum(resid**2, axis=0) / df, jnp.finfo(resid.dtype).tiny)
    var_C = jnp.maximum(C @ XtX_inv @ C, 0.0)
    t_vals = (C @ beta) / jnp.sqrt(var_C * mse)
    return jnp.nan_to_num(t_vals, nan=0.0, posinf=jnp.inf, neginf=-jnp.inf), df


class GLMTTest:
    """
    Per-element GLM t-test under a relabelling of the subjects.

    Calling the object with a labelling reorders the rows of the design
    matrix (so that subject i takes the design row of subject labelling[i])
    and returns the t-statistic of `contrast` at every element, together with
    the maximum and minimum over elements.

    Parameters
    ----------
    data : np.ndarray, shape (n_subjects, n_elements)
    design : np.ndarray, shape (n_subjects, n_regressors)
    contrast : np.ndarray, shape (n_regressors,)
    max_abs_stat : float, default 1000.0
        Statistics are clipped to [-max_abs_stat, max_abs_stat]. Elements with
        zero residual variance (e.g. a binary element that perfectly separates
        the groups) have an infinite t, which would leave no finite bound for
        the threshold sweep.
    """

    def __init__(self, data, design, contrast, max_abs_stat=1000.0):
        data = np.asarray(data, dtype=float)
        design = np.asarray(design, dtype=float)
        contrast = np.ravel(np.asarray(contrast, dtype=float))
        if data.ndim != 2:
            raise ConfigurationError(
                f"data must be 2D (subjects x elements), got shape {data.shape}"
            )
        if design.ndim == 1:
            design = design[:, None]
        if data.shape[0] != design.shape[0]:
            raise ConfigurationError(
                f"Data ({data.shape[0]}) and design ({design.shape[0]}) must have the same number of samples"
            )
        if contrast.shape[0] != design.shape[1]:
            raise ConfigurationError(
                "Contrast dimensions must match number of regressors in design matrix"
            )
        if design.shape[0] <= design.shape[1]:
            raise ConfigurationError(
                "Design matrix needs more subjects than regressors to estimate variance"
            )
        if not np.isfinite(max_abs_stat) or max_abs_stat <= 0:
            raise ConfigurationError(
                f"max_abs_stat must be a positive finite number, got {max_abs_stat}"
            )
        self.data = jnp.asarray(data)
        self.design = design
        self.contrast = jnp.asarray(contrast)
        self.max_abs_stat = float(max_abs_stat)
        self.n_subjects, self.n_elements = data.shape

    def __call__(self, labelling):
        X = jnp.asarray(self.design[np.asarray(labelling)])
        t_vals, _ = t(self.data, X, self.contrast)
        stats = np.clip(
            np.asarray(t_vals, dtype=float), -self.max_abs_stat, self.max_abs_stat
        )
        return stats, float(np.max(stats)), float(np.min(stats))
