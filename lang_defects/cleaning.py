"""
Loading and row-level cleaning of the commit-level FSE14/TOPLAS datasets.

The TOPLAS cleaning steps follow `re-analysis.Rmd` from the TOPLAS artifact,
since the artifact ships no dump of the processed data.
"""

from pathlib import Path

import pandas as pd

from .config import (
    DATA_DIR,
    FSE_CSV,
    TOPLAS_CSV,
    MIN_COMMITS,
    EXCLUDED_LANGUAGE,
    EXCLUDED_PROJECT,
    EXPECTED_FSE_ROWS,
    EXPECTED_TOPLAS_ROWS,
    CLEANUP_COLUMNS,
)
from .errors import DataContractError
from .levels import LevelIndex


def check(condition, description: str) -> bool:
    """Report whether `condition` holds; never raises"""
    ok = bool(condition)
    print(f"Assertion: {description}: {'pass' if ok else 'FAIL'}", flush=True)
    return ok


def require_columns(df: pd.DataFrame, columns) -> None:
    """Raise DataContractError if any of `columns` is missing from `df`"""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise DataContractError(f"Missing expected columns: {missing}")


def _as_text(series: pd.Series) -> pd.Series:
    return series.astype(str).where(series.notna())


# =============================================================================
# FILTERS
# =============================================================================

def remove_duplicate_shas(df: pd.DataFrame) -> pd.DataFrame:
    """
    Drop every commit whose sha appears under more than one project.

    A sha shared across projects is an artifact of data collection (e.g. forked
    history); since we can't tell which project owns it, all copies go.
    """
    require_columns(df, ['sha', 'project'])

    sha_proj = df[['sha', 'project']].drop_duplicates()
    projects_per_sha = sha_proj.groupby('sha', observed=True, dropna=False).size()
    duplicate_shas = projects_per_sha.index[projects_per_sha > 1]

    is_dup = df['sha'].isin(duplicate_shas)
    dup_projects = df.loc[is_dup, 'project'].unique()
    commits_in_dup_projects = int(df['project'].isin(dup_projects).sum())

    print(f"  Duplicate shas:         {len(duplicate_shas):>8}")
    print(f"  Records removed:        {int(is_dup.sum()):>8}")
    print(f"  Affected projects:      {len(dup_projects):>8}")
    print(f"  Commits in affected:    {commits_in_dup_projects:>8}", flush=True)

    return df.loc[~is_dup].reset_index(drop=True)


def filter_min_activity(df: pd.DataFrame, min_commits: int = MIN_COMMITS) -> pd.DataFrame:
    """Keep only (project, language) groups with at least `min_commits` records"""
    require_columns(df, ['project', 'language'])

    counts = df.groupby(['project', 'language'], observed=True).size()
    n_dropped = int((counts < min_commits).sum())

    sizes = df.groupby(['project', 'language'], observed=True)['project'].transform('size')
    out = df.loc[sizes >= min_commits].reset_index(drop=True)

    print(f"  Groups below {min_commits} commits: {n_dropped} dropped, "
          f"{len(df) - len(out)} records removed", flush=True)
    return out


def apply_exclusions(df: pd.DataFrame, language: str = EXCLUDED_LANGUAGE,
                     project: str = EXCLUDED_PROJECT) -> pd.DataFrame:
    """Remove the language and the project with known data-quality problems"""
    require_columns(df, ['project', 'language'])
    keep = (df['language'] != language) & (df['project'] != project)
    return df.loc[keep].reset_index(drop=True)


# =============================================================================
# PROJECTION & TYPING
# =============================================================================

def relevel_factors(df: pd.DataFrame) -> pd.DataFrame:
    """Re-derive `language`/`project` categories from the observed values, sorted"""
    data = df.copy()
    for col in ('language', 'project'):
        data[col] = LevelIndex.from_values(data[col]).categorical(data[col])
    return data


def cleanup_data(df: pd.DataFrame) -> pd.DataFrame:
    """
    Drop all unused columns and set up categorical columns as needed.

    `sha`, `committer`, `btype1` and `btype2` become plain text, `commit_date`
    a calendar date, and `language`/`project` categoricals over exactly the
    observed values. `devs` is added as a synonym of `committer`.
    """
    require_columns(df, CLEANUP_COLUMNS)
    data = df.loc[:, CLEANUP_COLUMNS].copy()

    # Keep as categoricals only columns that are used as such
    for col in ('sha', 'committer', 'btype1', 'btype2'):
        data[col] = _as_text(data[col])
    data['commit_date'] = pd.to_datetime(_as_text(data['commit_date'])).dt.date

    data = relevel_factors(data)

    data['devs'] = data['committer']
    return data


# =============================================================================
# LOADERS
# =============================================================================

def load_fse(path=None, cleanup: bool = False,
             expected_rows: int = EXPECTED_FSE_ROWS) -> pd.DataFrame:
    """Read the overall CSV data of the FSE14 study"""
    path = Path(path) if path else Path(DATA_DIR) / FSE_CSV
    data = pd.read_csv(path, low_memory=False)
    check(len(data) == expected_rows, f"FSE rows == {expected_rows}")
    if cleanup:
        data = cleanup_data(data)
    return data


def load_toplas(path=None, cleanup: bool = False,
                expected_rows: int = EXPECTED_TOPLAS_ROWS) -> pd.DataFrame:
    """
    Regenerate the overall data used for the re-analysis of the TOPLAS study.

    Args:
        path: CSV of commit records (defaults to DATA_DIR/newSha.csv)
        cleanup: Also project columns and fix types via cleanup_data
        expected_rows: Known row count after cleaning; drift is reported, not raised
    """
    path = Path(path) if path else Path(DATA_DIR) / TOPLAS_CSV
    print(f"\nLoading TOPLAS data: {path}", flush=True)
    data = pd.read_csv(path, low_memory=False)
    print(f"  Raw records: {len(data)}")

    data = remove_duplicate_shas(data)
    data = filter_min_activity(data)
    data = apply_exclusions(data)
    data = relevel_factors(data)

    check(len(data) == expected_rows, f"TOPLAS rows == {expected_rows}")
    if cleanup:
        data = cleanup_data(data)
        check(len(data) == expected_rows, f"cleaned TOPLAS rows == {expected_rows}")
    return data
