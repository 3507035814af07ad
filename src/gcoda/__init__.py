"""Python implementation of the gCoda network inference method.

gCoda (Fang et al., 2017, "gCoda: Conditional Dependence Network Inference
for Compositional Data") estimates a sparse precision matrix of the
log-basis behind compositional data such as microbiome relative
abundances.  A graphical lasso is solved repeatedly under the compositional
constraint along a penalty path, and the network is chosen by the extended
BIC.
"""

from .algorithm import (
    GlassoLoopResult,
    GlassoResult,
    connected_components,
    glasso,
    glasso_loop,
)

from .backends import (
    CoordinateDescentGlasso,
    PenalizedPrecisionSolver,
    SklearnGraphicalLasso,
)

from .selection import ebic_scores, select_ebic

from .solver import (
    DENSITY_RATIO,
    EDGE_THRESHOLD,
    EXTRA_LAMBDAS,
    LAMBDA_FLOOR,
    GcodaPath,
    GcodaResult,
    GcodaSubResult,
    edge_pattern,
    gcoda,
    gcoda_objective,
    gcoda_path,
    gcoda_sub,
    lambda_sequence,
)

from .transform import clr_covariance

__all__ = [
    "GlassoLoopResult",
    "GlassoResult",
    "CoordinateDescentGlasso",
    "PenalizedPrecisionSolver",
    "SklearnGraphicalLasso",
    "GcodaPath",
    "GcodaResult",
    "GcodaSubResult",
    "DENSITY_RATIO",
    "EDGE_THRESHOLD",
    "EXTRA_LAMBDAS",
    "LAMBDA_FLOOR",
    "clr_covariance",
    "connected_components",
    "ebic_scores",
    "edge_pattern",
    "gcoda",
    "gcoda_objective",
    "gcoda_path",
    "gcoda_sub",
    "glasso",
    "glasso_loop",
    "lambda_sequence",
    "select_ebic",
]
