"""
Derived covariates for the regression models.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from .errors import DataContractError, DegenerateLogError


def checked_log(values, name: str = 'value', logf=np.log):
    """Apply `logf` after verifying every value is a positive number"""
    arr = np.asarray(values, dtype=float)
    bad = ~(arr > 0)  # catches NaN too
    if bad.any():
        raise DegenerateLogError(
            f"Cannot take log of {name}: {int(bad.sum())} values <= 0 or missing"
        )
    result = logf(arr)
    if isinstance(values, pd.Series):
        return pd.Series(result, index=values.index, name=values.name)
    return result


def zero_safe_log(n_bugs, logf=np.log):
    """Log of bug counts with counts of 0 set to 0.5"""
    arr = np.asarray(n_bugs, dtype=float)
    if (arr < 0).any() or np.isnan(arr).any():
        raise DegenerateLogError("Bug counts must be non-negative")
    result = logf(np.where(arr == 0, 0.5, arr))
    if isinstance(n_bugs, pd.Series):
        return pd.Series(result, index=n_bugs.index, name=n_bugs.name)
    return result


@dataclass(frozen=True)
class Scaling:
    """Centering and scaling constants, kept to transform new inputs for prediction"""
    mean: float
    sd: float

    @classmethod
    def fit(cls, values) -> 'Scaling':
        arr = np.asarray(values, dtype=float)
        sd = float(np.std(arr, ddof=1)) if len(arr) > 1 else 0.0
        if not np.isfinite(sd) or sd == 0:
            raise DataContractError("Cannot scale a column with zero or undefined standard deviation")
        return cls(float(np.mean(arr)), sd)

    def apply(self, values):
        return (values - self.mean) / self.sd

    def invert(self, values):
        return values * self.sd + self.mean


def derive_covariates(aggr: pd.DataFrame) -> tuple[pd.DataFrame, Scaling]:
    """
    Add log-scaled and standardized covariates to a project/language rollup.

    Returns:
        (data, insertions_scaling): the augmented copy and the constants used
        to standardize `insertions`
    """
    data = aggr.copy()
    for col in ('devs', 'commits', 'max_commit_age', 'insertions'):
        data[f'{col}_log'] = checked_log(data[col], col)

    scaling = Scaling.fit(data['insertions'])
    data['insertions_s'] = scaling.apply(data['insertions'].astype(float))
    return data, scaling


def _relevel_last(values: pd.Series) -> pd.Series:
    """Categorical with the last level moved first (the reference level)"""
    cat = values.astype('category')
    levels = list(cat.cat.categories)
    if levels:
        levels = [levels[-1]] + levels[:-1]
    return cat.cat.reorder_categories(levels)


def log_transform(aggr: pd.DataFrame, logf=np.log) -> pd.DataFrame:
    """
    Log-transformed view of a rollup for the secondary analysis.

    Based on `logTransform` in TOPLAS19's `implementation.R`, but with a
    single log function throughout.
    """
    return pd.DataFrame({
        'language': aggr['language'],
        'language_id': aggr['language_id'],
        'log_devs': checked_log(aggr['devs'], 'devs', logf),
        'log_commits': checked_log(aggr['commits'], 'commits', logf),
        'log_insertions': checked_log(aggr['insertions'], 'insertions', logf),
        'log_max_commit_age': checked_log(aggr['max_commit_age'], 'max_commit_age', logf),
        'log_n_bugs': zero_safe_log(aggr['n_bugs'], logf),
        'n_bugs': aggr['n_bugs'],
        'domain': aggr['domain'].astype('category'),
        'domain_revlev': _relevel_last(aggr['domain']),
        'language_revlev': _relevel_last(aggr['language']),
        'commits': aggr['commits'],
    })
