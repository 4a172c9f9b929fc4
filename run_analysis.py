#!/usr/bin/env python3
"""
Reanalysis of programming languages and code quality, top to bottom.

Usage:
    python run_analysis.py
    python run_analysis.py --data-dir Data --object-dir Objects
    python run_analysis.py --skip-download   # use CSVs already in --data-dir
"""

import argparse
from pathlib import Path

from lang_defects import (
    DATA_DIR,
    OBJECT_DIR,
    Prior,
    setup_data,
    load_toplas,
    by_project_language,
    derive_covariates,
    eval_or_load,
    standard_models,
    fit_model,
    compare_models,
    pairwise_language_effects,
)
from lang_defects.config import TOPLAS_CSV

PRIOR = Prior(sd=1.0)


def main():
    parser = argparse.ArgumentParser(description='Languages and code quality reanalysis')
    parser.add_argument('--data-dir', default=DATA_DIR,
                        help='Directory holding the TOPLAS CSV files')
    parser.add_argument('--object-dir', default=OBJECT_DIR,
                        help='Directory for cached model fits and output tables')
    parser.add_argument('--skip-download', action='store_true',
                        help='Do not fetch the TOPLAS artifact')
    args = parser.parse_args()

    print("="*60)
    print("LANGUAGES AND CODE QUALITY")
    print("="*60)

    data_dir = Path(args.data_dir)
    object_dir = Path(args.object_dir)
    object_dir.mkdir(parents=True, exist_ok=True)

    if not args.skip_download:
        setup_data(data_dir)

    # 1. Commit records -> project/language groups
    commits = load_toplas(data_dir / TOPLAS_CSV, cleanup=True)
    aggr = by_project_language(commits)
    data, scaling = derive_covariates(aggr)
    print(f"  insertions scaled with mean={scaling.mean:.1f}, sd={scaling.sd:.1f}")

    # 2. Fit (or load) the three models
    specs = standard_models()
    fits = {
        spec.name: eval_or_load(lambda spec=spec: fit_model(spec, data, PRIOR),
                                f'{spec.name}.pkl', object_dir)
        for spec in specs
    }

    for name, fitted in fits.items():
        print(f"\nPopulation-level coefficients ({name}):")
        for _, row in fitted.coefficients().iterrows():
            print(f"  {row['term']:<22} {row['estimate']:>8.3f} "
                  f"[{row['lower']:>7.3f}, {row['upper']:>7.3f}]")

    # 3. Out-of-sample comparison
    comparison = eval_or_load(lambda: compare_models(specs, data, PRIOR),
                              'comparison.pkl', object_dir)
    comparison.to_csv(object_dir / 'comparison.csv', index=False)

    # 4. Pairwise language effects under the best model
    best = fits[comparison.loc[0, 'model']]
    effects = pairwise_language_effects(best, data)
    effects.to_csv(object_dir / 'language_effects.csv', index=False)

    print(f"\nLanguage pairs where one is buggier with probability >= 0.95:")
    strong = effects[(effects['prob_a_buggier'] >= 0.95) | (effects['prob_a_buggier'] <= 0.05)]
    for _, row in strong.iterrows():
        print(f"  {row['language_a']:<14} vs {row['language_b']:<14} "
              f"diff={row['mean_diff']:>7.1f}  P(a>b)={row['prob_a_buggier']:.2f}")

    print("\n" + "="*60)
    print("DONE")
    print("="*60)


if __name__ == "__main__":
    main()
