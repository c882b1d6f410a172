import argparse
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import gbr_model
import knn_model
import mlr_model
import rf_model
from fire_utils import FeatureSpec, load_config, ensure_directories, print_environment, write_table
from preprocessing import Partition, prepare_datasets, make_partition


@dataclass(frozen=True)
class ModelFamily:
    fit: Callable
    evaluate: Callable
    params: Callable[[Dict], Dict]
    variants: Dict[str, Dict] = field(default_factory=dict)


MODEL_FAMILIES = {
    'linear': ModelFamily(mlr_model.fit_linear, mlr_model.evaluate_linear, mlr_model.config_params,
                          variants={'linear_regional': {'regional': True}, 'linear_pooled': {'regional': False}}),
    'knn': ModelFamily(knn_model.fit_knn, knn_model.evaluate_knn, knn_model.config_params),
    'gbr': ModelFamily(gbr_model.fit_gbr, gbr_model.evaluate_gbr, gbr_model.config_params),
    'rf': ModelFamily(rf_model.fit_rf, rf_model.evaluate_rf, rf_model.config_params),
}


def enabled_families(cfg: Dict) -> List[str]:
    names = cfg.get('models', {}).get('enabled') or list(MODEL_FAMILIES)
    unknown = [n for n in names if n not in MODEL_FAMILIES]
    if unknown:
        raise ValueError(f"Unknown model families: {unknown}; expected any of {list(MODEL_FAMILIES)}")
    return list(names)


def compare_models(partition: Partition, spec: FeatureSpec, cfg: Dict, families: Optional[Sequence[str]] = None, overrides: Optional[Dict[str, Dict]] = None) -> Tuple[pd.DataFrame, Dict[str, object]]:
    # Every family sees the same partition, so the RMSE columns are comparable
    rows = []
    artifacts = {}
    overrides = overrides or {}
    for name in families or enabled_families(cfg):
        family = MODEL_FAMILIES[name]
        params = {**family.params(cfg), **overrides.get(name, {})}
        if 'seed' in params:
            params['seed'] = partition.seed
        artifact = family.fit(partition, spec, **params)
        artifacts[name] = artifact
        for label, kwargs in (family.variants or {name: {}}).items():
            scores = family.evaluate(artifact, partition, **kwargs)
            rows.append({'model': label, 'train_rmse': scores['train_rmse'], 'test_rmse': scores['test_rmse']})
            print(f"{label}: Train RMSE {scores['train_rmse']:.4f} | Test RMSE {scores['test_rmse']:.4f}")
    return pd.DataFrame(rows, columns=['model', 'train_rmse', 'test_rmse']), artifacts


def seed_sensitivity(cleaned: pd.DataFrame, cfg: Dict, seeds: Sequence[int], families: Optional[Sequence[str]] = None) -> pd.DataFrame:
    spec = FeatureSpec.from_config(cfg)
    # Cached tuning curves belong to one partition; recompute them for every seed
    no_cache = {name: {'cache_dir': None} for name in ('knn', 'gbr')}
    runs = []
    for seed in seeds:
        partition = make_partition(cleaned, cfg, seed=seed)
        table, _ = compare_models(partition, spec, cfg, families, overrides=no_cache)
        table['seed'] = seed
        runs.append(table)
    allruns = pd.concat(runs, ignore_index=True)
    summary = (
        allruns.groupby('model', sort=False)
               .agg(train_rmse_mean=('train_rmse', 'mean'),
                    test_rmse_mean=('test_rmse', 'mean'),
                    test_rmse_std=('test_rmse', lambda s: float(np.std(s, ddof=0))),
                    n_seeds=('seed', 'nunique'))
               .reset_index()
    )
    return summary


def main(config_path: str, sensitivity: bool = False) -> None:
    cfg = load_config(config_path)
    output_dir = cfg['paths']['output_dir']
    ensure_directories(output_dir, cfg['paths']['models_dir'])
    print_environment(cfg)

    partition, cleaned = prepare_datasets(cfg)
    spec = FeatureSpec.from_config(cfg)
    table, artifacts = compare_models(partition, spec, cfg)

    print("\n" + "=" * 50)
    print("MODEL COMPARISON SUMMARY")
    print("=" * 50)
    print(table.round(4).to_string(index=False))
    print(f"Wrote comparison table: {write_table(table, output_dir, 'model_comparison')}")
    best = table.loc[table['test_rmse'].idxmin()]
    print(f"Best model (by test RMSE): {best['model']} ({best['test_rmse']:.4f})")

    if 'linear' in artifacts:
        regional = mlr_model.regional_rmse_table(artifacts['linear'], partition)
        print(f"Wrote regional RMSE table: {write_table(regional, output_dir, 'linear_regional_rmse')}")
    if 'gbr' in artifacts:
        sweep = gbr_model.tree_count_sweep(artifacts['gbr'], partition, gbr_model.config_params(cfg)['sweep'])
        print(f"Boosting test RMSE trend: {gbr_model.sweep_trend(sweep)}")
        print(f"Wrote tree-count sweep: {write_table(sweep, output_dir, 'gbr_sweep')}")
    if 'rf' in artifacts:
        print(f"Wrote importance table: {write_table(artifacts['rf'].importance, output_dir, 'rf_importance')}")

    if sensitivity:
        seeds = cfg.get('sensitivity', {}).get('seeds', [1, 2, 3, 4, 5])
        print(f"\nSeed sensitivity over seeds {seeds}")
        summary = seed_sensitivity(cleaned, cfg, seeds)
        print(summary.round(4).to_string(index=False))
        print(f"Wrote seed sensitivity: {write_table(summary, output_dir, 'seed_sensitivity')}")


def cli() -> None:
    parser = argparse.ArgumentParser(description='Compare wildfire size regressors on one stratified partition')
    parser.add_argument('--config', type=str, required=True, help='Path to config.yaml')
    parser.add_argument('--sensitivity', action='store_true', help='Also repeat the comparison over the configured seeds')
    args = parser.parse_args()
    main(args.config, args.sensitivity)


if __name__ == '__main__':
    cli()
