"""
Central configuration for the phylogenetic flow library.
"""

# --- Identifier Parameters ---

# Prefix for edge ids derived from the child node id (``Node185`` -> ``ENode185``).
EDGE_ID_PREFIX: str = "E"

# Prefixes for the contiguous namespace assigned by MRCA filtering.
RENUMBER_NODE_PREFIX: str = "n"
RENUMBER_EDGE_PREFIX: str = "e"

# --- Branch Length Parameters ---

# Negative branch lengths with magnitude below this tolerance are clamped to 0.
# Ultrametric subtraction on float merge heights can produce tiny negatives.
BRANCH_LENGTH_TOLERANCE: float = 1e-12

# Branch length assigned when a tree carries no length metadata on an edge.
DEFAULT_BRANCH_LENGTH: float = 1.0

# --- Model Fitting Parameters ---

# Fitting engine used when ModelConfig does not name one.
# Options: 'elastic_net', 'lasso', 'ridge', 'ols'
DEFAULT_ENGINE: str = "elastic_net"

# Overall penalty strength passed to scikit-learn as ``alpha``.
DEFAULT_ALPHA: float = 0.01

# Mixing between L1 and L2 penalties for the elastic net (1.0 = pure lasso).
DEFAULT_L1_RATIO: float = 0.5

# Coordinate-descent iteration cap before a ConvergenceWarning is raised.
DEFAULT_MAX_ITER: int = 10_000

# Seconds before an engine call is abandoned (None disables the bound).
# Full-dataset fits can take tens of minutes, so this is opt-in.
DEFAULT_FIT_TIMEOUT: float | None = None

# --- Parallelism Parameters ---

# Environment variable overriding the joblib worker count for batch queries.
N_JOBS_ENV_VAR: str = "PHYLOFLOW_N_JOBS"

# Batch MRCA queries below this count run sequentially.
MIN_QUERIES_FOR_PARALLEL: int = 8
