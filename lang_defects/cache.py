"""
Memoization of expensive, deterministic results (model fits) on disk.
"""

import os
import pickle
import tempfile
from pathlib import Path
from typing import Callable, Any


def eval_or_load(fit_model: Callable[[], Any], filename: str, savedir) -> Any:
    """
    If an object named `filename` exists in `savedir`, deserialize and return it.
    Otherwise call `fit_model`, serialize its result, and return it.

    The file only appears once fully written, so a failed save leaves no
    cache entry behind. Not safe for concurrent writers to the same file.
    Delete the file to force a recomputation.
    """
    save_path = Path(savedir)
    save_path.mkdir(parents=True, exist_ok=True)
    fpath = save_path / filename

    if fpath.exists():
        print(f"  Loading cached object: {fpath}", flush=True)
        with open(fpath, 'rb') as f:
            return pickle.load(f)

    obj = fit_model()
    with tempfile.NamedTemporaryFile(dir=save_path, prefix=f".{filename}.",
                                     suffix='.tmp', delete=False) as tmp:
        tmp_path = Path(tmp.name)
        try:
            pickle.dump(obj, tmp)
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    os.replace(tmp_path, fpath)
    print(f"  Saved object: {fpath}", flush=True)
    return obj
