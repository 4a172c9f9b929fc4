#!/usr/bin/env python3
"""
Unit tests for lang_defects package.

Usage:
    python -m pytest tests/test_unit.py -v
"""

import io
import math
import sys
import tarfile
import zipfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# CONFIG TESTS
# =============================================================================

def test_config_imports():
    """Config module should import without errors"""
    from lang_defects.config import (
        MIN_COMMITS,
        EXCLUDED_LANGUAGE,
        EXCLUDED_PROJECT,
        EXPECTED_TOPLAS_ROWS,
        CLEANUP_COLUMNS,
        ARTIFACT_FILES,
        AGGREGATE_INPUT_COLS,
        DISPERSION_BOUNDS,
    )
    assert MIN_COMMITS == 20
    assert EXCLUDED_LANGUAGE == "Typescript"
    assert EXCLUDED_PROJECT == "v8"
    assert EXPECTED_TOPLAS_ROWS == 1481307
    assert 'sha' in CLEANUP_COLUMNS
    assert 'author' not in CLEANUP_COLUMNS
    assert len(ARTIFACT_FILES) == 4
    assert set(AGGREGATE_INPUT_COLS) <= set(CLEANUP_COLUMNS) | {'devs'}
    assert 0 < DISPERSION_BOUNDS[0] < DISPERSION_BOUNDS[1]


# =============================================================================
# LEVEL INDEX TESTS
# =============================================================================

def test_level_index_sorted_and_one_based():
    """Levels are the sorted observed values with 1-based ids"""
    from lang_defects.levels import LevelIndex

    idx = LevelIndex.from_values(['Python', 'C', 'Python', None, 'Haskell'])
    assert idx.levels == ('C', 'Haskell', 'Python')
    assert idx.id_of('C') == 1
    assert idx.id_of('Python') == 3
    assert idx.level_of(2) == 'Haskell'
    assert 'C' in idx
    assert len(idx) == 3


def test_level_index_unknown_values():
    """Unknown values and ids should raise KeyError"""
    from lang_defects.levels import LevelIndex

    idx = LevelIndex.from_values(['a', 'b'])
    with pytest.raises(KeyError):
        idx.id_of('c')
    with pytest.raises(KeyError):
        idx.level_of(0)
    with pytest.raises(KeyError):
        idx.ids_for(pd.Series(['a', 'c']))


def test_level_index_ids_for_series():
    """ids_for keeps the index of the input series"""
    from lang_defects.levels import LevelIndex

    idx = LevelIndex.from_values(['b', 'a'])
    s = pd.Series(['b', 'a', 'b'], index=[10, 11, 12])
    ids = idx.ids_for(s)
    assert list(ids.index) == [10, 11, 12]
    assert list(ids) == [2, 1, 2]


def test_level_index_categorical_drops_superset():
    """Recoding narrows categories to exactly the index levels"""
    from lang_defects.levels import LevelIndex

    s = pd.Series(pd.Categorical(['x', 'y'], categories=['z', 'y', 'x']))
    idx = LevelIndex.from_values(s)
    recoded = idx.categorical(s)
    assert list(recoded.cat.categories) == ['x', 'y']


# =============================================================================
# TRANSFORM TESTS
# =============================================================================

def test_zero_safe_log_values():
    """Zero bug counts map to log(0.5), others to their log"""
    from lang_defects.transforms import zero_safe_log

    out = zero_safe_log(np.array([0, 1, 2, 10]))
    assert out.tolist() == pytest.approx([math.log(0.5), 0.0, math.log(2), math.log(10)], rel=1e-12)


def test_zero_safe_log_strictly_increasing():
    """The transform preserves order of counts >= 1 and puts 0 below them"""
    from lang_defects.transforms import zero_safe_log

    out = zero_safe_log(np.arange(0, 50))
    assert np.all(np.diff(out) > 0)


def test_zero_safe_log_rejects_negative():
    """Negative counts are a data error"""
    from lang_defects.errors import DegenerateLogError
    from lang_defects.transforms import zero_safe_log

    with pytest.raises(DegenerateLogError):
        zero_safe_log(pd.Series([3, -1]))


def test_checked_log():
    """checked_log refuses zero, negative and missing values"""
    from lang_defects.errors import DegenerateLogError
    from lang_defects.transforms import checked_log

    s = pd.Series([1.0, math.e], name='devs')
    out = checked_log(s, 'devs')
    assert out.name == 'devs'
    assert out.tolist() == pytest.approx([0.0, 1.0])

    for bad in ([1, 0], [2, -3], [1, float('nan')]):
        with pytest.raises(DegenerateLogError):
            checked_log(bad, 'x')


def test_scaling_uses_sample_sd():
    """Scaling keeps mean and sample standard deviation"""
    from lang_defects.transforms import Scaling

    scaling = Scaling.fit([1, 2, 3])
    assert scaling.mean == 2.0
    assert scaling.sd == 1.0
    assert scaling.apply(np.array([3.0]))[0] == 1.0
    assert scaling.invert(np.array([1.0]))[0] == 3.0


def test_scaling_constant_column():
    """A constant column cannot be standardized"""
    from lang_defects.errors import DataContractError
    from lang_defects.transforms import Scaling

    with pytest.raises(DataContractError):
        Scaling.fit([5, 5, 5])


def _aggregate_frame():
    return pd.DataFrame({
        'project': ['alpha', 'alpha', 'beta', 'beta'],
        'language': pd.Categorical(['C', 'Python', 'C', 'Python']),
        'language_id': [1, 2, 1, 2],
        'project_id': [1, 1, 2, 2],
        'commits': [2, 1, 2, 3],
        'insertions': [35, 1, 100, 12],
        'max_commit_age': [7, 1, 50, 9],
        'n_bugs': [2, 0, 2, 1],
        'devs': [2, 1, 1, 3],
        'domain': ['Library', 'Library', 'Application', 'Application'],
    })


def test_derive_covariates():
    """Covariates are added to a copy, with insertions standardized"""
    from lang_defects.transforms import derive_covariates

    aggr = _aggregate_frame()
    data, scaling = derive_covariates(aggr)

    assert 'devs_log' not in aggr.columns
    for col in ('devs_log', 'commits_log', 'max_commit_age_log', 'insertions_log', 'insertions_s'):
        assert col in data.columns
    assert data['commits_log'].tolist() == pytest.approx(np.log([2, 1, 2, 3]).tolist())
    assert scaling.mean == pytest.approx(37.0)
    assert data['insertions_s'].mean() == pytest.approx(0.0)
    assert data['insertions_s'].std(ddof=1) == pytest.approx(1.0)


def test_derive_covariates_zero_insertions():
    """Zero insertions must be caught before taking the log"""
    from lang_defects.errors import DegenerateLogError
    from lang_defects.transforms import derive_covariates

    aggr = _aggregate_frame()
    aggr.loc[1, 'insertions'] = 0
    with pytest.raises(DegenerateLogError):
        derive_covariates(aggr)


def test_log_transform_columns():
    """log_transform releveling puts the last level first"""
    from lang_defects.transforms import log_transform

    out = log_transform(_aggregate_frame())
    assert out['log_n_bugs'][1] == pytest.approx(math.log(0.5))
    assert list(out['domain'].cat.categories) == ['Application', 'Library']
    assert out['domain_revlev'].cat.categories[0] == 'Library'
    assert out['language_revlev'].cat.categories[0] == 'Python'
    assert out['n_bugs'].tolist() == [2, 0, 2, 1]


# =============================================================================
# CACHE TESTS
# =============================================================================

def test_eval_or_load_computes_once(tmp_path):
    """Second call loads the stored object without recomputing"""
    from lang_defects.cache import eval_or_load

    calls = []

    def fit():
        calls.append(1)
        return pd.DataFrame({'a': [1, 2, 3]})

    first = eval_or_load(fit, 'obj.pkl', tmp_path / 'objects')
    second = eval_or_load(fit, 'obj.pkl', tmp_path / 'objects')

    assert len(calls) == 1
    assert (tmp_path / 'objects' / 'obj.pkl').exists()
    pd.testing.assert_frame_equal(first, second)


def test_eval_or_load_separate_keys(tmp_path):
    """Different keys are cached independently"""
    from lang_defects.cache import eval_or_load

    assert eval_or_load(lambda: 1, 'one.pkl', tmp_path) == 1
    assert eval_or_load(lambda: 2, 'two.pkl', tmp_path) == 2
    assert eval_or_load(lambda: 3, 'one.pkl', tmp_path) == 1


def test_eval_or_load_failed_save_leaves_no_entry(tmp_path):
    """An object that cannot be pickled is not cached, and the key recomputes later"""
    from lang_defects.cache import eval_or_load

    with pytest.raises(Exception):
        eval_or_load(lambda: [b'x' * 200000, lambda: 0], 'm.pkl', tmp_path)

    assert list(tmp_path.iterdir()) == []
    assert eval_or_load(lambda: 1, 'm.pkl', tmp_path) == 1
    assert eval_or_load(lambda: 2, 'm.pkl', tmp_path) == 1


# =============================================================================
# ACQUISITION TESTS
# =============================================================================

def _fake_artifact(members=None, extra=()) -> bytes:
    """A zip wrapping toplas.tar.gz, laid out like the TOPLAS artifact"""
    from lang_defects.config import ARTIFACT_FILES, TOPLAS_ARTIFACT_DIR

    members = ARTIFACT_FILES if members is None else members
    names = [f"{TOPLAS_ARTIFACT_DIR}/{m}" for m in members] + list(extra)

    tar_buf = io.BytesIO()
    with tarfile.open(fileobj=tar_buf, mode='w:gz') as tf:
        for name in names:
            payload = f"sha,project\n{Path(name).name},p\n".encode()
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tf.addfile(info, io.BytesIO(payload))

    zip_buf = io.BytesIO()
    with zipfile.ZipFile(zip_buf, 'w') as zf:
        zf.writestr('toplas.tar.gz', tar_buf.getvalue())
    return zip_buf.getvalue()


class _FakeResponse:
    def __init__(self, payload: bytes):
        self.payload = payload

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        pass

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i:i + chunk_size]


class _FakeSession:
    def __init__(self, payload: bytes):
        self.payload = payload
        self.calls = 0

    def get(self, url, stream=False, timeout=None):
        self.calls += 1
        return _FakeResponse(self.payload)


@pytest.mark.filterwarnings('error::DeprecationWarning')
def test_setup_data_extracts_files(tmp_path):
    """setup_data copies the four CSVs and cleans up temporary files"""
    from lang_defects.acquisition import setup_data

    session = _FakeSession(_fake_artifact())
    data_dir = setup_data(tmp_path / 'Data', session=session)

    assert session.calls == 1
    for name in ('_newSha.csv', '_everything.csv', 'newSha.csv', 'checkSha.csv'):
        assert (data_dir / name).exists()
    assert (data_dir / 'toplas.tar.gz').exists()
    assert not (data_dir / 'toplas.zip').exists()
    assert not (data_dir / 'TOPLAS_Artifact').exists()


def test_setup_data_is_idempotent(tmp_path):
    """An existing tarball skips the download"""
    from lang_defects.acquisition import setup_data

    session = _FakeSession(_fake_artifact())
    setup_data(tmp_path, session=session)
    setup_data(tmp_path, session=session)
    assert session.calls == 1


def test_setup_data_bad_archive(tmp_path):
    """A corrupt download aborts acquisition"""
    from lang_defects.acquisition import setup_data

    with pytest.raises(zipfile.BadZipFile):
        setup_data(tmp_path, session=_FakeSession(b'not a zip'))
    assert not (tmp_path / 'toplas.zip').exists()


def test_setup_data_retries_after_incomplete_artifact(tmp_path):
    """A failed extraction leaves no tarball, so the next call downloads again"""
    from lang_defects.acquisition import setup_data
    from lang_defects.config import ARTIFACT_FILES

    broken = _FakeSession(_fake_artifact(members=ARTIFACT_FILES[:2]))
    with pytest.raises(FileNotFoundError):
        setup_data(tmp_path, session=broken)
    assert not (tmp_path / 'toplas.tar.gz').exists()
    assert not (tmp_path / 'toplas.zip').exists()
    assert not (tmp_path / 'TOPLAS_Artifact').exists()

    good = _FakeSession(_fake_artifact())
    setup_data(tmp_path, session=good)
    assert good.calls == 1
    for name in ('_newSha.csv', '_everything.csv', 'newSha.csv', 'checkSha.csv'):
        assert (tmp_path / name).exists()
    assert (tmp_path / 'toplas.tar.gz').exists()


@pytest.mark.skipif(not hasattr(tarfile, 'data_filter'),
                    reason="tarfile extraction filters need Python 3.12+ or a backport")
def test_setup_data_rejects_member_outside_data_dir(tmp_path):
    """Tar members pointing outside the data directory are refused"""
    from lang_defects.acquisition import setup_data

    data_dir = tmp_path / 'Data'
    session = _FakeSession(_fake_artifact(extra=['TOPLAS_Artifact/../../escaped.csv']))
    with pytest.raises(tarfile.FilterError):
        setup_data(data_dir, session=session)

    assert not (tmp_path / 'escaped.csv').exists()
    assert not (data_dir / 'toplas.tar.gz').exists()


# =============================================================================
# MODEL SPEC TESTS
# =============================================================================

def test_standard_model_formulas():
    """The three standard models nest and render to patsy formulas"""
    from lang_defects.model import standard_models

    m1, m2, m3 = standard_models()
    assert m1.formula() == 'n_bugs ~ 1 + C(language_id)'
    assert m2.formula() == ('n_bugs ~ 1 + devs_log + max_commit_age_log + commits_log'
                            ' + insertions_s + C(language_id)')
    assert m3.formula().endswith('C(language_id) + C(project_id)')
    assert m3.columns()[0] == 'n_bugs'
    assert 'project_id' in m3.predictor_columns()


def test_varying_slopes_formula():
    """Varying slopes render as group interactions"""
    from lang_defects.model import ModelSpec, Term, VaryingEffect

    spec = ModelSpec('s', 'n_bugs', terms=(Term('commits', 'log'),),
                     varying=(VaryingEffect('language_id', (Term('commits', 'log'),)),))
    assert spec.formula() == ('n_bugs ~ 1 + np.log(commits) + C(language_id)'
                              ' + C(language_id):np.log(commits)')
    assert spec.columns() == ['n_bugs', 'commits', 'language_id']


def test_model_spec_validation():
    """Validation names missing columns and bad outcomes"""
    from lang_defects.errors import ModelSpecError, DegenerateLogError
    from lang_defects.model import ModelSpec, Term, VaryingEffect

    df = pd.DataFrame({'n_bugs': [0, 3], 'commits': [1, 0], 'language_id': [1, 2]})

    with pytest.raises(ModelSpecError, match='devs'):
        ModelSpec('m', 'n_bugs', terms=(Term('devs'),)).validate(df)

    with pytest.raises(ModelSpecError):
        ModelSpec('m', '', varying=(VaryingEffect('language_id'),)).validate(df)

    with pytest.raises(ModelSpecError):
        ModelSpec('m', 'commits').validate(df.assign(commits=[1.5, 2]))

    with pytest.raises(DegenerateLogError):
        ModelSpec('m', 'n_bugs', terms=(Term('commits', 'log'),)).validate(df)

    with pytest.raises(ModelSpecError):
        Term('commits', 'sqrt')


def test_prior_precision_skips_intercept():
    """The intercept gets a flat prior"""
    from lang_defects.errors import ModelSpecError
    from lang_defects.model import Prior

    prec = Prior(sd=2.0).precision(['Intercept', 'x', 'y'])
    assert prec.tolist() == [0.0, 0.25, 0.25]
    with pytest.raises(ModelSpecError):
        Prior(sd=0)


# =============================================================================
# INTEGRATION TESTS
# =============================================================================

def test_package_imports():
    """Main package should import all public APIs"""
    from lang_defects import (
        setup_data,
        load_toplas,
        remove_duplicate_shas,
        filter_min_activity,
        apply_exclusions,
        cleanup_data,
        by_project_language,
        derive_covariates,
        eval_or_load,
        fit_model,
        compare_models,
    )


def test_package_version():
    """Package should have version"""
    import lang_defects
    assert hasattr(lang_defects, '__version__')
    assert lang_defects.__version__


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
