"""
Lang Defects - Programming Languages and Code Quality, Reanalysed
=================================================================

Data preparation and regression modelling for the reanalysis of the TOPLAS
study of programming languages and defects in GitHub projects.

Commit records are deduplicated, filtered and rolled up by project and
language; bug counts are then modelled with negative-binomial regressions
that let the intercept vary by language, and models are compared by their
out-of-sample predictive accuracy.
"""

from .config import (
    DATA_DIR,
    OBJECT_DIR,
    MIN_COMMITS,
    EXCLUDED_LANGUAGE,
    EXCLUDED_PROJECT,
    EXPECTED_TOPLAS_ROWS,
)

from .errors import (
    DataContractError,
    DegenerateLogError,
    ModelSpecError,
)

from .acquisition import setup_data

from .cleaning import (
    check,
    remove_duplicate_shas,
    filter_min_activity,
    apply_exclusions,
    cleanup_data,
    load_fse,
    load_toplas,
)

from .levels import LevelIndex

from .aggregation import by_project_language

from .transforms import (
    Scaling,
    checked_log,
    zero_safe_log,
    derive_covariates,
    log_transform,
)

from .cache import eval_or_load

from .model import (
    Term,
    VaryingEffect,
    ModelSpec,
    Prior,
    FittedModel,
    standard_models,
    fit_model,
    kfold_elpd,
    compare_models,
    pairwise_language_effects,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "DATA_DIR",
    "OBJECT_DIR",
    "MIN_COMMITS",
    "EXCLUDED_LANGUAGE",
    "EXCLUDED_PROJECT",
    "EXPECTED_TOPLAS_ROWS",
    # Errors
    "DataContractError",
    "DegenerateLogError",
    "ModelSpecError",
    # Acquisition
    "setup_data",
    # Cleaning
    "check",
    "remove_duplicate_shas",
    "filter_min_activity",
    "apply_exclusions",
    "cleanup_data",
    "load_fse",
    "load_toplas",
    # Aggregation
    "LevelIndex",
    "by_project_language",
    # Transforms
    "Scaling",
    "checked_log",
    "zero_safe_log",
    "derive_covariates",
    "log_transform",
    # Cache
    "eval_or_load",
    # Model
    "Term",
    "VaryingEffect",
    "ModelSpec",
    "Prior",
    "FittedModel",
    "standard_models",
    "fit_model",
    "kfold_elpd",
    "compare_models",
    "pairwise_language_effects",
]
