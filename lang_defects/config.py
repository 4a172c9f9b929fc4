"""
Configuration and constants for the language/defect reanalysis.
"""

import os

# =============================================================================
# DIRECTORIES
# =============================================================================

DATA_DIR = os.environ.get('LANG_DEFECTS_DATA_DIR', 'Data')

# Default location of cached model fits. Passed explicitly to the cache helper
# and the model fitter by the driver script, never read by them directly.
OBJECT_DIR = os.environ.get('LANG_DEFECTS_OBJECT_DIR', 'Objects')

# =============================================================================
# DATA ACQUISITION
# =============================================================================

# A tarball inside a zip (the latter created by Dropbox)
TOPLAS_URL = (
    'https://www.dropbox.com/sh/gqcvfzs5awep573/'
    'AABfGYQHjmGiExIcXfhb-GPqa?dl=1&preview=toplas.tar.gz'
)
DOWNLOAD_TIMEOUT = 100  # seconds

TOPLAS_ZIP = 'toplas.zip'
TOPLAS_TARBALL = 'toplas.tar.gz'
TOPLAS_ARTIFACT_DIR = 'TOPLAS_Artifact'

# Files copied out of the artifact, relative to TOPLAS_ARTIFACT_DIR
ARTIFACT_FILES = [
    'original-artifact/_newSha.csv',
    'original-artifact/_everything.csv',
    'repetition/Data/newSha.csv',
    'repetition/Data/checkSha.csv',
]

FSE_CSV = '_newSha.csv'
TOPLAS_CSV = 'newSha.csv'

# =============================================================================
# CLEANING
# =============================================================================

MIN_COMMITS = 20

# Known data-quality problems in the TOPLAS dataset
EXCLUDED_LANGUAGE = 'Typescript'
EXCLUDED_PROJECT = 'v8'

# Row counts of the published datasets, used as regression checks
EXPECTED_FSE_ROWS = 1578165
EXPECTED_TOPLAS_ROWS = 1481307

# Columns kept by cleanup_data
CLEANUP_COLUMNS = [
    'language',
    'typeclass',
    'langclass',
    'memoryclass',
    'compileclass',
    'project',
    'sha',
    'files',
    'committer',
    # 'author' is derived by TOPLAS19 from `_everything.csv`
    'commit_age',
    'commit_date',
    'insertion',
    'deletion',
    'isbug',
    'domain',
    'btype1',
    'btype2',
]

# Columns the rollup needs from each commit record
AGGREGATE_INPUT_COLS = [
    'project', 'language', 'sha', 'insertion', 'commit_age', 'isbug', 'domain', 'devs',
]

# =============================================================================
# MODELLING
# =============================================================================

RANDOM_STATE = 42
CV_FOLDS = 5
N_DRAWS = 1000

# Search range for the NB2 dispersion (variance mu + dispersion * mu^2)
DISPERSION_BOUNDS = (1e-4, 10.0)
