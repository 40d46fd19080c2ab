from .connectivity import AdjacencyConnector, GridConnector, build_connectivity_matrix
from .errors import ComputationFailure, ConfigurationError, ResourceExhaustion
from .permutation_inference import (
    PermutationWorker,
    ResultAggregator,
    TfceEngine,
    compute_fwe_p_values,
    permutation_analysis_tfce,
    process_p_values,
)
from .permutation_logic import (
    PermutationItem,
    PermutationSource,
    check_permutations,
    generate_permutations,
)
from .stats import GLMTTest
from .tfce import GraphIntegrator, SpatialIntegrator, calculate_auto_dh

__version__ = "0.1.0"
