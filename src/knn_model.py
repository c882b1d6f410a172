import argparse
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
from sklearn.neighbors import KNeighborsRegressor, NearestNeighbors
from sklearn.preprocessing import StandardScaler

from fire_utils import (
    FeatureSpec, check_no_missing, encode_features, rmse,
    load_config, ensure_directories, print_environment, save_model,
    frame_fingerprint, load_cv_cache, write_cv_cache, write_table,
)
from preprocessing import Partition, prepare_datasets


@dataclass(frozen=True)
class KNNModel:
    estimator: KNeighborsRegressor
    k: int
    columns: Tuple[str, ...]
    cv_curve: pd.DataFrame
    spec: FeatureSpec


def scaled_features(df: pd.DataFrame, spec: FeatureSpec, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    # Each partition is encoded and standardized on its own statistics
    X = encode_features(df, spec, columns=list(columns) if columns is not None else None)
    return pd.DataFrame(StandardScaler().fit_transform(X), index=X.index, columns=X.columns)


def loo_mse_curve(X: np.ndarray, y: np.ndarray, k_values: Sequence[int]) -> pd.DataFrame:
    # LOO MSE for every k from one neighbour query of size max(k)+1, with each point's own row removed
    k_values = sorted(int(k) for k in k_values)
    n = X.shape[0]
    k_max = k_values[-1]
    if k_values[0] < 1 or k_max >= n:
        raise ValueError(f"k values must lie in [1, {n - 1}] for {n} training rows, got {k_values}")

    nn = NearestNeighbors(n_neighbors=k_max + 1, metric='euclidean').fit(X)
    _, idx = nn.kneighbors(X)
    self_mask = idx == np.arange(n)[:, None]
    # Exact duplicates can push a point's own row out of its list; drop the farthest instead
    self_mask[~self_mask.any(axis=1), -1] = True
    neighbours = idx[~self_mask].reshape(n, k_max)

    running = np.cumsum(y[neighbours], axis=1)
    rows = []
    for k in k_values:
        preds = running[:, k - 1] / k
        rows.append({'param': k, 'mse': float(np.mean((y - preds) ** 2))})
    return pd.DataFrame(rows)


def select_k(curve: pd.DataFrame) -> int:
    # Largest k reaching the minimum: ties go to the smoother fit
    best = curve['mse'].min()
    at_min = curve[curve['mse'] <= best + 1e-12 * max(1.0, abs(best))]
    return int(at_min['param'].max())


def fit_knn(partition: Partition, spec: FeatureSpec, k_values: Sequence[int] = tuple(range(1, 51)), seed: int = 42, max_tuning_rows: Optional[int] = None, cache_dir: Optional[str] = None) -> KNNModel:
    train = partition.train
    check_no_missing(train, spec.columns + [spec.target], 'k-NN')
    X = scaled_features(train, spec)
    y = train[spec.target].to_numpy(dtype=float)

    settings = dict(seed=seed, max_tuning_rows=max_tuning_rows, n_rows=len(y), data=frame_fingerprint(train[spec.columns + [spec.target]]))
    curve = load_cv_cache(cache_dir, 'knn', k_values, settings) if cache_dir else None
    if curve is not None:
        print(f"Loaded k-NN LOO curve from cache ({len(curve)} k values)")
    else:
        X_tune, y_tune = X.to_numpy(), y
        if max_tuning_rows is not None and len(y) > max_tuning_rows:
            rng = np.random.default_rng(seed)
            rows = np.sort(rng.choice(len(y), size=max_tuning_rows, replace=False))
            X_tune, y_tune = X_tune[rows], y_tune[rows]
            print(f"k-NN tuning on a {max_tuning_rows}-row subsample (seed {seed})")
        curve = loo_mse_curve(X_tune, y_tune, k_values)
        if cache_dir:
            path = write_cv_cache(curve, cache_dir, 'knn', k_values, settings)
            print(f"Wrote k-NN LOO curve: {path}")

    k = select_k(curve)
    print(f"k-NN LOO selected k={k} (MSE {curve.loc[curve['param'] == k, 'mse'].iloc[0]:.4f})")
    estimator = KNeighborsRegressor(n_neighbors=k, metric='euclidean').fit(X.to_numpy(), y)
    return KNNModel(estimator, k, tuple(X.columns), curve[['param', 'mse']].reset_index(drop=True), spec)


def evaluate_knn(model: KNNModel, partition: Partition) -> Dict[str, float]:
    spec = model.spec
    check_no_missing(partition.test, spec.columns + [spec.target], 'k-NN')
    scores = {}
    for name, df in [('train', partition.train), ('test', partition.test)]:
        X = scaled_features(df, spec, columns=model.columns)
        scores[f'{name}_rmse'] = rmse(df[spec.target], model.estimator.predict(X.to_numpy()))
    return scores


def config_params(cfg: Dict) -> Dict:
    knn_cfg = cfg.get('models', {}).get('knn', {}) or {}
    k_values: List[int] = knn_cfg.get('k_values') or list(range(int(knn_cfg.get('k_min', 1)), int(knn_cfg.get('k_max', 50)) + 1))
    use_cache = bool(knn_cfg.get('use_cache', True))
    return {
        'k_values': k_values,
        'seed': int(cfg.get('random_state', 42)),
        'max_tuning_rows': knn_cfg.get('max_tuning_rows', None),
        'cache_dir': cfg['paths']['output_dir'] if use_cache else None,
    }


def main(config_path: str) -> None:
    cfg = load_config(config_path)
    ensure_directories(cfg['paths']['output_dir'], cfg['paths']['models_dir'])
    print_environment(cfg)

    partition, _ = prepare_datasets(cfg)
    spec = FeatureSpec.from_config(cfg)
    model = fit_knn(partition, spec, **config_params(cfg))
    scores = evaluate_knn(model, partition)
    print(f"k-NN (k={model.k}) Train RMSE: {scores['train_rmse']:.4f} | Test RMSE: {scores['test_rmse']:.4f}")

    path = write_table(model.cv_curve, cfg['paths']['output_dir'], 'knn_loo_curve')
    print(f"Wrote LOO curve: {path}")

    if cfg.get('output', {}).get('save_model', True):
        model_path = save_model(model, cfg['paths']['models_dir'], 'knn')
        print(f"Saved model to: {model_path}")
    else:
        print("Model saving skipped (configured to not save)")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Fit k-NN regression with leave-one-out k selection')
    parser.add_argument('--config', type=str, required=True, help='Path to config.yaml')
    args = parser.parse_args()
    main(args.config)
