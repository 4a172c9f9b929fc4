"""
Rollup of cleaned commit records by project and language.

Based on `summarizeByLanguage` in TOPLAS19's `implementation.R`.
"""

import pandas as pd

from .config import AGGREGATE_INPUT_COLS
from .cleaning import require_columns
from .errors import DataContractError
from .levels import LevelIndex


def _language_index(df: pd.DataFrame) -> LevelIndex:
    if isinstance(df['language'].dtype, pd.CategoricalDtype):
        return LevelIndex.from_categorical(df['language'])
    return LevelIndex.from_values(df['language'])


def _project_index(df: pd.DataFrame) -> LevelIndex:
    if isinstance(df['project'].dtype, pd.CategoricalDtype):
        return LevelIndex.from_categorical(df['project'])
    return LevelIndex.from_values(df['project'])


def check_single_domain(df: pd.DataFrame) -> None:
    """Raise DataContractError if any (project, language) group spans several domains"""
    domains = df.groupby(['project', 'language'], observed=True)['domain'].nunique(dropna=False)
    bad = domains[domains > 1]
    if len(bad):
        groups = [f"{p}/{l}" for p, l in bad.index[:5]]
        raise DataContractError(
            f"{len(bad)} (project, language) groups have more than one domain: {groups}"
        )


def by_project_language(df: pd.DataFrame) -> pd.DataFrame:
    """
    Summarize commit records by (project, language).

    Columns: project, language, commits (distinct shas), insertions (total,
    `tins` in TOPLAS19), max_commit_age, n_bugs (buggy commits, `bcommits` in
    TOPLAS19), domain, devs (distinct developers), language_id, project_id.

    `language_id`/`project_id` are 1-based positions in the categories of the
    input columns, so cleaned data keeps one id per value across runs.
    """
    require_columns(df, AGGREGATE_INPUT_COLS)
    check_single_domain(df)

    languages = _language_index(df)
    projects = _project_index(df)

    grouped = df.groupby(['project', 'language'], observed=True, sort=True)
    aggr = grouped.agg(
        commits=('sha', 'nunique'),
        insertions=('insertion', 'sum'),
        max_commit_age=('commit_age', 'max'),
        n_bugs=('isbug', 'sum'),
        domain=('domain', 'first'),
        devs=('devs', 'nunique'),
    ).reset_index()

    aggr['n_bugs'] = aggr['n_bugs'].astype(int)
    aggr['language'] = languages.categorical(aggr['language'])
    aggr['project'] = projects.categorical(aggr['project'])
    aggr['language_id'] = languages.ids_for(aggr['language'])
    aggr['project_id'] = projects.ids_for(aggr['project'])

    print(f"  Aggregated {len(df)} commits into {len(aggr)} project/language groups "
          f"({len(languages)} languages, {aggr['project'].nunique()} projects)", flush=True)
    return aggr
