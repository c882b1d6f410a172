import argparse
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
from sklearn.ensemble import GradientBoostingRegressor

from fire_utils import (
    FeatureSpec, check_no_missing, encode_features, rmse,
    load_config, ensure_directories, print_environment, save_model,
    frame_fingerprint, load_cv_cache, write_cv_cache, write_table,
)
from preprocessing import Partition, prepare_datasets


@dataclass(frozen=True)
class GBRModel:
    estimator: GradientBoostingRegressor
    columns: Tuple[str, ...]
    spec: FeatureSpec
    cv_curve: Optional[pd.DataFrame] = None


def _make_estimator(n_estimators: int, learning_rate: float, max_depth: int, subsample: float, min_samples_leaf: int, seed: int) -> GradientBoostingRegressor:
    return GradientBoostingRegressor(
        n_estimators=n_estimators,
        learning_rate=learning_rate,
        max_depth=max_depth,
        subsample=subsample,
        min_samples_leaf=min_samples_leaf,
        loss='squared_error',
        random_state=seed,
    )


def check_sweep(sweep: Sequence[int], n_trees: int) -> List[int]:
    # Every tree count must be reachable by staged prediction
    values = sorted(sweep)
    bad = [v for v in values if int(v) != v or not 1 <= v <= n_trees]
    if not values or bad:
        raise ValueError(f"Sweep tree counts must lie in [1, {n_trees}], got {list(sweep)}")
    return [int(v) for v in values]


def _staged_rmse(estimator: GradientBoostingRegressor, X: np.ndarray, y: np.ndarray, sweep: Sequence[int]) -> List[float]:
    sweep = check_sweep(sweep, estimator.n_estimators_)
    wanted = set(int(n) for n in sweep)
    out = {}
    for n_trees, preds in enumerate(estimator.staged_predict(X), start=1):
        if n_trees in wanted:
            out[n_trees] = rmse(y, preds)
    return [out[int(n)] for n in sweep]


def cv_sweep(partition: Partition, X: pd.DataFrame, y: np.ndarray, sweep: Sequence[int], params: Dict) -> pd.DataFrame:
    # Validation folds come from the training partition only
    per_fold = []
    for train_idx, val_idx in partition.cv_folds:
        est = _make_estimator(**params).fit(X.iloc[train_idx].to_numpy(), y[train_idx])
        per_fold.append(_staged_rmse(est, X.iloc[val_idx].to_numpy(), y[val_idx], sweep))
    scores = np.asarray(per_fold)
    return pd.DataFrame({'param': list(sweep), 'cv_rmse': scores.mean(axis=0), 'cv_rmse_std': scores.std(axis=0)})


def fit_gbr(partition: Partition, spec: FeatureSpec, n_estimators: int = 500, learning_rate: float = 0.01, max_depth: int = 4, subsample: float = 1.0, min_samples_leaf: int = 10, seed: int = 42, sweep: Optional[Sequence[int]] = None, use_cv: bool = False, cache_dir: Optional[str] = None) -> GBRModel:
    train = partition.train
    check_no_missing(train, spec.columns + [spec.target], 'gradient boosting')
    X = encode_features(train, spec)
    y = train[spec.target].to_numpy(dtype=float)
    params = dict(n_estimators=n_estimators, learning_rate=learning_rate, max_depth=max_depth,
                  subsample=subsample, min_samples_leaf=min_samples_leaf, seed=seed)

    cv_curve = None
    if use_cv and partition.cv_folds:
        sweep = check_sweep(sweep or default_sweep(n_estimators), n_estimators)
        settings = dict(params, n_rows=len(y), n_folds=len(partition.cv_folds), split_seed=partition.seed, data=frame_fingerprint(train[spec.columns + [spec.target]]))
        cv_curve = load_cv_cache(cache_dir, 'gbr', sweep, settings) if cache_dir else None
        if cv_curve is None:
            cv_curve = cv_sweep(partition, X, y, sweep, params)
            if cache_dir:
                print(f"Wrote boosting CV curve: {write_cv_cache(cv_curve, cache_dir, 'gbr', sweep, settings)}")
        cv_curve = cv_curve[['param', 'cv_rmse', 'cv_rmse_std']].reset_index(drop=True)

    print(f"Training GBR with n_estimators={n_estimators}, learning_rate={learning_rate}, max_depth={max_depth}")
    estimator = _make_estimator(**params).fit(X.to_numpy(), y)
    return GBRModel(estimator, tuple(X.columns), spec, cv_curve)


def _aligned(model: GBRModel, df: pd.DataFrame) -> np.ndarray:
    return encode_features(df, model.spec, columns=list(model.columns)).to_numpy()


def evaluate_gbr(model: GBRModel, partition: Partition) -> Dict[str, float]:
    spec = model.spec
    check_no_missing(partition.test, spec.columns + [spec.target], 'gradient boosting')
    return {
        'train_rmse': rmse(partition.train[spec.target], model.estimator.predict(_aligned(model, partition.train))),
        'test_rmse': rmse(partition.test[spec.target], model.estimator.predict(_aligned(model, partition.test))),
    }


def default_sweep(n_estimators: int, points: int = 10) -> List[int]:
    return sorted(set(int(round(v)) for v in np.linspace(n_estimators / points, n_estimators, points)))


def tree_count_sweep(model: GBRModel, partition: Partition, sweep: Optional[Sequence[int]] = None) -> pd.DataFrame:
    n_fitted = model.estimator.n_estimators_
    sweep = check_sweep(sweep or default_sweep(n_fitted), n_fitted)
    target = model.spec.target
    table = pd.DataFrame({
        'n_trees': sweep,
        'train_rmse': _staged_rmse(model.estimator, _aligned(model, partition.train), partition.train[target].to_numpy(dtype=float), sweep),
        'test_rmse': _staged_rmse(model.estimator, _aligned(model, partition.test), partition.test[target].to_numpy(dtype=float), sweep),
    })
    if model.cv_curve is not None:
        table = table.merge(model.cv_curve.rename(columns={'param': 'n_trees'}), on='n_trees', how='left')
    return table


def sweep_trend(table: pd.DataFrame, column: str = 'test_rmse') -> str:
    diffs = np.diff(table[column].to_numpy())
    if len(diffs) == 0:
        return 'flat'
    if np.all(diffs > 0):
        return 'rising'
    if np.all(diffs < 0):
        return 'falling'
    best = int(table.loc[table[column].idxmin(), 'n_trees'])
    return f'minimum at {best} trees'


def config_params(cfg: Dict) -> Dict:
    gbr_cfg = cfg.get('models', {}).get('gbr', {}) or {}
    use_cache = bool(gbr_cfg.get('use_cache', True))
    return {
        'n_estimators': int(gbr_cfg.get('n_estimators', 500)),
        'learning_rate': float(gbr_cfg.get('learning_rate', 0.01)),
        'max_depth': int(gbr_cfg.get('max_depth', 4)),
        'subsample': float(gbr_cfg.get('subsample', 1.0)),
        'min_samples_leaf': int(gbr_cfg.get('min_samples_leaf', 10)),
        'seed': int(cfg.get('random_state', 42)),
        'sweep': gbr_cfg.get('sweep', None),
        'use_cv': bool(gbr_cfg.get('use_cv', False)),
        'cache_dir': cfg['paths']['output_dir'] if use_cache else None,
    }


def main(config_path: str) -> None:
    cfg = load_config(config_path)
    ensure_directories(cfg['paths']['output_dir'], cfg['paths']['models_dir'])
    print_environment(cfg)

    partition, _ = prepare_datasets(cfg)
    spec = FeatureSpec.from_config(cfg)
    params = config_params(cfg)
    model = fit_gbr(partition, spec, **params)
    scores = evaluate_gbr(model, partition)
    print(f"GBR Train RMSE: {scores['train_rmse']:.4f} | Test RMSE: {scores['test_rmse']:.4f}")

    sweep = tree_count_sweep(model, partition, params['sweep'])
    print(sweep.round(4).to_string(index=False))
    trend = sweep_trend(sweep)
    print(f"Test RMSE trend across tree counts: {trend}")
    if trend == 'rising':
        print("Warning: test error rises at every tree count; check shrinkage and depth before comparing")
    print(f"Wrote tree-count sweep: {write_table(sweep, cfg['paths']['output_dir'], 'gbr_sweep')}")

    if cfg.get('output', {}).get('save_model', True):
        model_path = save_model(model, cfg['paths']['models_dir'], 'gbr')
        print(f"Saved model to: {model_path}")
    else:
        print("Model saving skipped (configured to not save)")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Fit gradient-boosted regression trees for wildfire size')
    parser.add_argument('--config', type=str, required=True, help='Path to config.yaml')
    args = parser.parse_args()
    main(args.config)
