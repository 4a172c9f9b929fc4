"""
One-time download of the TOPLAS replication package.

The replication package is a tarball, which is kept in compressed form with
only the needed files extracted locally. The tarball marks the data as
available: delete it to pull the data anew.
"""

import shutil
import tarfile
import zipfile
from pathlib import Path

import requests

from .config import (
    DATA_DIR,
    TOPLAS_URL,
    DOWNLOAD_TIMEOUT,
    TOPLAS_ZIP,
    TOPLAS_TARBALL,
    TOPLAS_ARTIFACT_DIR,
    ARTIFACT_FILES,
)


def download_file(url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT,
                  session: requests.Session = None) -> Path:
    """Stream `url` to `dest`, raising on HTTP errors"""
    session = session or requests.Session()
    with session.get(url, stream=True, timeout=timeout) as resp:
        resp.raise_for_status()
        with open(dest, 'wb') as f:
            for chunk in resp.iter_content(chunk_size=1 << 20):
                if chunk:
                    f.write(chunk)
    return dest


def setup_data(dirname=DATA_DIR, url: str = TOPLAS_URL,
               timeout: float = DOWNLOAD_TIMEOUT,
               session: requests.Session = None) -> Path:
    """
    Pull the TOPLAS replication package into `dirname` unless already there.

    Args:
        dirname: Directory receiving the CSV files
        url: Location of the zip wrapping the tarball
        timeout: Network timeout in seconds
        session: Optional requests session (shared auth, test stubs)

    Returns:
        Path of the data directory
    """
    data_dir = Path(dirname)
    data_dir.mkdir(parents=True, exist_ok=True)

    zip_path = data_dir / TOPLAS_ZIP
    tarball = data_dir / TOPLAS_TARBALL
    artifact_dir = data_dir / TOPLAS_ARTIFACT_DIR

    if not tarball.exists():
        print(f"  Downloading TOPLAS artifact to {data_dir}...", flush=True)
        try:
            _fetch_artifact(url, data_dir, zip_path, tarball, artifact_dir, timeout, session)
        except Exception:
            # The tarball marks success, so a partial run must not leave it behind
            tarball.unlink(missing_ok=True)
            zip_path.unlink(missing_ok=True)
            shutil.rmtree(artifact_dir, ignore_errors=True)
            raise
    else:
        print(f"  TOPLAS artifact already present: {tarball}", flush=True)

    zip_path.unlink(missing_ok=True)
    shutil.rmtree(artifact_dir, ignore_errors=True)
    return data_dir


def _extract_tarball(tarball: Path, dest: Path) -> None:
    with tarfile.open(tarball) as tf:
        if hasattr(tarfile, 'data_filter'):
            # Rejects members that would land outside `dest`
            tf.extractall(dest, filter='data')
        else:
            tf.extractall(dest)


def _fetch_artifact(url, data_dir, zip_path, tarball, artifact_dir, timeout, session):
    download_file(url, zip_path, timeout=timeout, session=session)

    with zipfile.ZipFile(zip_path) as zf:
        zf.extractall(data_dir)
    if not tarball.exists():
        raise FileNotFoundError(f"Archive does not contain {TOPLAS_TARBALL}: {zip_path}")

    _extract_tarball(tarball, data_dir)

    for member in ARTIFACT_FILES:
        src = artifact_dir / member
        shutil.copy(src, data_dir / src.name)
        print(f"  Copied {src.name}", flush=True)
