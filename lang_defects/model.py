"""
Negative-binomial regression of bug counts, model comparison, and language effects.

Models are described by a structured ModelSpec, validated against the table
before fitting. The fitter returns a normal (Laplace) approximation of the
posterior around the MAP estimate under independent normal priors, or around
the maximum-likelihood estimate when no prior is given.
"""

from dataclasses import dataclass
from itertools import combinations

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import optimize, stats
from sklearn.model_selection import KFold

from .config import RANDOM_STATE, CV_FOLDS, N_DRAWS, DISPERSION_BOUNDS
from .errors import ModelSpecError, DegenerateLogError

# Formula text for each supported term transform
TRANSFORMS = {
    None: '{}',
    'log': 'np.log({})',
    'center': 'center({})',
    'standardize': 'standardize({})',
}


# =============================================================================
# MODEL SPECIFICATION
# =============================================================================

@dataclass(frozen=True)
class Term:
    """Population-level term: a column, optionally transformed"""
    column: str
    transform: str | None = None

    def __post_init__(self):
        if self.transform not in TRANSFORMS:
            raise ModelSpecError(f"Unknown transform {self.transform!r} for {self.column}")

    @property
    def label(self) -> str:
        return TRANSFORMS[self.transform].format(self.column)


@dataclass(frozen=True)
class VaryingEffect:
    """Intercept (and optionally slopes of `terms`) varying by `group`"""
    group: str
    terms: tuple = ()

    def labels(self) -> list[str]:
        grp = f'C({self.group})'
        return [grp] + [f'{grp}:{t.label}' for t in self.terms]


@dataclass(frozen=True)
class ModelSpec:
    """Outcome, population-level terms and varying effects of a count model"""
    name: str
    outcome: str
    terms: tuple = ()
    varying: tuple = ()

    def columns(self) -> list[str]:
        """All columns the model reads, outcome first"""
        cols = [self.outcome] + [t.column for t in self.terms]
        for v in self.varying:
            cols.append(v.group)
            cols.extend(t.column for t in v.terms)
        return list(dict.fromkeys(cols))

    def predictor_columns(self) -> list[str]:
        return [c for c in self.columns() if c != self.outcome]

    def formula(self) -> str:
        rhs = ['1'] + [t.label for t in self.terms]
        for v in self.varying:
            rhs.extend(v.labels())
        return f"{self.outcome} ~ {' + '.join(rhs)}"

    def validate(self, data: pd.DataFrame) -> None:
        """Raise ModelSpecError unless `data` can be used to fit this model"""
        if not self.outcome:
            raise ModelSpecError(f"Model {self.name} has no outcome")
        missing = [c for c in self.columns() if c not in data.columns]
        if missing:
            raise ModelSpecError(f"Model {self.name} references missing columns: {missing}")

        y = pd.to_numeric(data[self.outcome], errors='coerce')
        if y.isna().any() or (y < 0).any() or not np.all(np.mod(y, 1) == 0):
            raise ModelSpecError(f"Outcome {self.outcome} must be a non-negative count")

        log_terms = [t for t in self.terms if t.transform == 'log']
        for v in self.varying:
            log_terms.extend(t for t in v.terms if t.transform == 'log')
        for t in log_terms:
            if not (pd.to_numeric(data[t.column], errors='coerce') > 0).all():
                raise DegenerateLogError(f"Cannot take log of {t.column}: values <= 0 or missing")

    def extend(self, name: str, terms: tuple = (), varying: tuple = ()) -> 'ModelSpec':
        """Copy of this spec with extra terms and varying effects"""
        return ModelSpec(name, self.outcome, self.terms + tuple(terms), self.varying + tuple(varying))


@dataclass(frozen=True)
class Prior:
    """Independent normal(0, sd) prior on every coefficient except the intercept"""
    sd: float = 1.0

    def __post_init__(self):
        if not self.sd > 0:
            raise ModelSpecError(f"Prior sd must be positive, got {self.sd}")

    def precision(self, columns) -> np.ndarray:
        prec = np.full(len(columns), 1.0 / self.sd ** 2)
        prec[[i for i, c in enumerate(columns) if c == 'Intercept']] = 0.0
        return prec


POPULATION_TERMS = (
    Term('devs_log'),
    Term('max_commit_age_log'),
    Term('commits_log'),
    Term('insertions_s'),
)


def standard_models(outcome: str = 'n_bugs') -> list[ModelSpec]:
    """
    The three models of the reanalysis, from simplest to richest:
    m1 varying intercept by language; m2 adds the population-level
    covariates; m3 adds a varying intercept by project.
    """
    m1 = ModelSpec('m1', outcome, varying=(VaryingEffect('language_id'),))
    m2 = m1.extend('m2', terms=POPULATION_TERMS)
    m3 = m2.extend('m3', varying=(VaryingEffect('project_id'),))
    return [m1, m2, m3]


# =============================================================================
# FITTING
# =============================================================================

def nb_logpmf(y, mu, dispersion: float) -> np.ndarray:
    """Pointwise NB2 log probability (variance mu + dispersion * mu^2)"""
    n = 1.0 / dispersion
    return stats.nbinom.logpmf(np.asarray(y), n, n / (n + np.asarray(mu)))


def _fit_at_dispersion(y, X, dispersion: float, prior_prec: np.ndarray, start_params):
    """NB GLM fit for a fixed dispersion; ridge-penalized when any precision is set"""
    glm = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=dispersion))
    if prior_prec.any():
        # penalized objective is -loglike / n + alpha * |b|^2 / 2
        result = glm.fit_regularized(alpha=prior_prec / len(y), L1_wt=0.0,
                                     start_params=start_params)
        converged = bool(getattr(result, 'converged', True))
    else:
        result = glm.fit(start_params=start_params, scale=1.0)
        converged = bool(result.converged)
    return glm, np.asarray(result.params, dtype=float), converged


def estimate_dispersion(y, X, prior_prec: np.ndarray, start_params) -> float:
    """
    NB2 dispersion maximizing the penalized log-likelihood.

    Every candidate dispersion gets its own (penalized) fit, so group dummies
    that the prior shrinks cannot soak up the extra-Poisson variation.
    """
    y_obs = np.asarray(y, dtype=float)

    def neg_penalized_loglike(log_alpha):
        alpha = float(np.exp(log_alpha))
        glm, params, _ = _fit_at_dispersion(y, X, alpha, prior_prec, start_params)
        loglike = nb_logpmf(y_obs, glm.predict(params), alpha).sum()
        return -(loglike - 0.5 * np.sum(prior_prec * params ** 2))

    lo, hi = DISPERSION_BOUNDS
    opt = optimize.minimize_scalar(neg_penalized_loglike, bounds=(np.log(lo), np.log(hi)),
                                   method='bounded', options={'xatol': 1e-3})
    return float(np.exp(opt.x))


def _fit_design(y: pd.Series, X: pd.DataFrame, prior: Prior = None) -> dict:
    """Fit a NB2 GLM on design matrices; returns params, covariance and dispersion"""
    columns = list(X.columns)
    prior_prec = np.zeros(len(columns)) if prior is None else prior.precision(columns)

    pilot = sm.GLM(y, X, family=sm.families.Poisson()).fit()
    start_params = pilot.params.values
    dispersion = estimate_dispersion(y, X, prior_prec, start_params)
    glm, params, converged = _fit_at_dispersion(y, X, dispersion, prior_prec, start_params)

    hessian = glm.hessian(params, scale=1.0)
    cov = np.linalg.pinv(-hessian + np.diag(prior_prec))

    return {
        'params': pd.Series(params, index=columns),
        'cov': pd.DataFrame(cov, index=columns, columns=columns),
        'dispersion': dispersion,
        'converged': converged,
    }


class FittedModel:
    """
    Normal approximation of a fitted NB2 model.

    Keeps the training rows so the patsy design (which cannot be pickled) is
    rebuilt on demand after a round trip through the cache.
    """

    def __init__(self, spec: ModelSpec, data: pd.DataFrame, fit: dict, prior: Prior = None):
        self.spec = spec
        self.prior = prior
        self.data = data[spec.columns()].reset_index(drop=True)
        self.params = fit['params']
        self.cov = fit['cov']
        self.dispersion = fit['dispersion']
        self.converged = fit['converged']
        self._design_info = None

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_design_info'] = None
        return state

    @property
    def nobs(self) -> int:
        return len(self.data)

    @property
    def design_info(self):
        if self._design_info is None:
            _, X = patsy.dmatrices(self.spec.formula(), self.data,
                                   return_type='dataframe', NA_action='raise')
            self._design_info = X.design_info
        return self._design_info

    def design(self, new_data: pd.DataFrame) -> pd.DataFrame:
        """Population and group design matrix for `new_data`"""
        missing = [c for c in self.spec.predictor_columns() if c not in new_data.columns]
        if missing:
            raise ModelSpecError(f"New data lacks columns: {missing}")
        (X,) = patsy.build_design_matrices([self.design_info], new_data,
                                           return_type='dataframe', NA_action='raise')
        return X[self.params.index]

    def predict_mean(self, new_data: pd.DataFrame) -> np.ndarray:
        """Expected counts at the point estimate"""
        return np.exp(self.design(new_data).values @ self.params.values)

    def log_predictive_density(self, data: pd.DataFrame = None) -> np.ndarray:
        """Pointwise log probability of observed outcomes"""
        data = self.data if data is None else data
        return nb_logpmf(data[self.spec.outcome].values, self.predict_mean(data), self.dispersion)

    def draw_params(self, draws: int, rng: np.random.Generator) -> np.ndarray:
        """Coefficient draws from the normal approximation, shape (draws, params)"""
        return rng.multivariate_normal(self.params.values, self.cov.values,
                                       size=draws, method='eigh')

    def posterior_predict(self, new_data: pd.DataFrame, draws: int = N_DRAWS,
                          random_state=RANDOM_STATE) -> np.ndarray:
        """Posterior predictive draws, shape (draws, rows of new_data)"""
        rng = np.random.default_rng(random_state)
        X = self.design(new_data).values
        betas = self.draw_params(draws, rng)
        mu = np.exp(betas @ X.T)
        n = 1.0 / self.dispersion
        return rng.negative_binomial(n, n / (n + mu))

    def coefficients(self, level: float = 0.95) -> pd.DataFrame:
        """Summary of population-level coefficients"""
        names = [c for c in self.params.index if not c.startswith('C(')]
        se = np.sqrt(np.diag(self.cov.loc[names, names].values))
        z = stats.norm.ppf(0.5 + level / 2)
        est = self.params[names].values
        return pd.DataFrame({
            'term': names,
            'estimate': est,
            'std_error': se,
            'lower': est - z * se,
            'upper': est + z * se,
        })

    def __repr__(self):
        return (f"FittedModel({self.spec.name}: {self.spec.formula()}, "
                f"nobs={self.nobs}, dispersion={self.dispersion:.3f})")


def fit_model(spec: ModelSpec, data: pd.DataFrame, prior: Prior = None) -> FittedModel:
    """
    Fit `spec` to `data` as a negative-binomial (NB2, log link) regression.

    Args:
        spec: Model specification, validated against `data` first
        data: Project/language rollup with derived covariates
        prior: Normal prior on the coefficients; None for maximum likelihood
    """
    spec.validate(data)
    print(f"  Fitting {spec.name}: {spec.formula()}", flush=True)
    y, X = patsy.dmatrices(spec.formula(), data, return_type='dataframe', NA_action='raise')
    fit = _fit_design(y.iloc[:, 0], X, prior)
    if not fit['converged']:
        print(f"  WARNING: {spec.name} did not converge", flush=True)
    return FittedModel(spec, data, fit, prior)


# =============================================================================
# MODEL COMPARISON
# =============================================================================

def kfold_elpd(spec: ModelSpec, data: pd.DataFrame, prior: Prior = None,
               folds: int = CV_FOLDS, random_state=RANDOM_STATE) -> np.ndarray:
    """
    Pointwise out-of-sample log predictive densities by K-fold cross-validation.

    The design is built once on all rows so every fold shares the same columns.
    """
    spec.validate(data)
    y, X = patsy.dmatrices(spec.formula(), data, return_type='dataframe', NA_action='raise')
    y = y.iloc[:, 0]

    pointwise = np.empty(len(y))
    splitter = KFold(n_splits=folds, shuffle=True, random_state=random_state)
    for train_idx, test_idx in splitter.split(X):
        fit = _fit_design(y.iloc[train_idx], X.iloc[train_idx], prior)
        mu = np.exp(X.iloc[test_idx].values @ fit['params'].values)
        pointwise[test_idx] = nb_logpmf(y.iloc[test_idx].values, mu, fit['dispersion'])
    return pointwise


def compare_models(specs, data: pd.DataFrame, prior: Prior = None,
                   folds: int = CV_FOLDS, random_state=RANDOM_STATE) -> pd.DataFrame:
    """
    Rank models by cross-validated expected log predictive density (elpd).

    `elpd_diff`/`se_diff` are relative to the best model, computed on the
    pointwise differences.
    """
    print("\n" + "="*60)
    print("MODEL COMPARISON")
    print("="*60)

    pointwise = {s.name: kfold_elpd(s, data, prior, folds, random_state) for s in specs}
    n = len(data)

    rows = [{
        'model': name,
        'elpd': pw.sum(),
        'se': np.sqrt(n * np.var(pw, ddof=1)),
    } for name, pw in pointwise.items()]
    results_df = pd.DataFrame(rows).sort_values('elpd', ascending=False).reset_index(drop=True)

    best = pointwise[results_df.loc[0, 'model']]
    results_df['elpd_diff'] = results_df['elpd'] - results_df.loc[0, 'elpd']
    results_df['se_diff'] = [
        np.sqrt(n * np.var(pointwise[m] - best, ddof=1)) for m in results_df['model']
    ]

    print(f"\n{folds}-fold CV on {n} project/language groups")
    print(f"\n{'Model':<10} {'elpd':>12} {'se':>10} {'elpd_diff':>12} {'se_diff':>10}")
    print("-" * 60)
    for _, row in results_df.iterrows():
        print(f"{row['model']:<10} {row['elpd']:>12.1f} {row['se']:>10.1f} "
              f"{row['elpd_diff']:>12.1f} {row['se_diff']:>10.1f}")

    return results_df


# =============================================================================
# LANGUAGE EFFECTS
# =============================================================================

def reference_rows(fitted: FittedModel, data: pd.DataFrame,
                   group: str = 'language_id') -> pd.DataFrame:
    """
    One row per level of `group`, other predictors held at typical values:
    numeric covariates at their mean, other grouping columns at their mode.
    """
    spec = fitted.spec
    grouping = {v.group for v in spec.varying}
    row = {}
    for col in spec.predictor_columns():
        if col == group:
            continue
        if col in grouping:
            row[col] = data[col].mode().iloc[0]
        else:
            row[col] = data[col].mean()

    levels = sorted(data[group].unique())
    ref = pd.DataFrame([{**row, group: lvl} for lvl in levels])
    return ref


def pairwise_language_effects(fitted: FittedModel, data: pd.DataFrame,
                              draws: int = N_DRAWS, random_state=RANDOM_STATE,
                              level: float = 0.95) -> pd.DataFrame:
    """
    Compare predicted bug counts of every pair of languages.

    For a project with typical covariates, draws from the posterior predictive
    distribution of each language; for each pair reports the mean difference
    (a - b), its central interval, and the probability that `a` is buggier.
    """
    if 'language' not in data.columns:
        raise ModelSpecError("Data lacks a language column")
    names = (data[['language_id', 'language']].drop_duplicates()
             .set_index('language_id')['language'].astype(str))

    ref = reference_rows(fitted, data, 'language_id')
    sims = fitted.posterior_predict(ref, draws=draws, random_state=random_state)
    lo, hi = 50 * (1 - level), 50 * (1 + level)

    rows = []
    for i, j in combinations(range(len(ref)), 2):
        diff = sims[:, i] - sims[:, j]
        rows.append({
            'language_a': names[ref.loc[i, 'language_id']],
            'language_b': names[ref.loc[j, 'language_id']],
            'mean_diff': diff.mean(),
            'lower': np.percentile(diff, lo),
            'upper': np.percentile(diff, hi),
            'prob_a_buggier': (diff > 0).mean(),
        })
    return pd.DataFrame(rows)
